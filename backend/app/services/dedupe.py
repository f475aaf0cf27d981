from __future__ import annotations

import hashlib
import json
import logging
import os
from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Callable, Iterator, Optional

from backend.app.models import InboundMessage, utc_now
from backend.app.services.phones import DEFAULT_COUNTRY_CODE, normalize_phone
from backend.app.store import InMemoryStore

logger = logging.getLogger("sms_inbox.dedupe")

RECOVERY_FILE_VERSION = 1


class DedupLockTimeout(Exception):
    pass


def format_timestamp(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds") + "Z"


def identity_key(message: InboundMessage, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    if message.provider_message_id and message.provider_message_id.strip():
        return message.provider_message_id.strip()
    base = "|".join(
        [
            normalize_phone(message.sender, country_code),
            format_timestamp(message.received_at_utc),
            message.body.strip(),
        ]
    )
    return "sms_" + hashlib.sha1(base.encode("utf-8")).hexdigest()


def scope_key(owner_id: Optional[str], sender: str, body: str) -> str:
    # Orphans have no owner, so their scope is the sender.
    owner_part = owner_id or "orphan:" + sender
    digest = hashlib.sha1(f"{owner_part}|{body}".encode("utf-8")).hexdigest()
    return "scope_" + digest


def _to_millis(value: datetime) -> int:
    return int((value - datetime(1970, 1, 1)).total_seconds() * 1000)


def _from_millis(value: int) -> datetime:
    return datetime(1970, 1, 1) + timedelta(milliseconds=value)


class _KeyedLocks:
    def __init__(self) -> None:
        self._guard = Lock()
        self._slots: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(key, [Lock(), 0])
            slot[1] += 1
        acquired = slot[0].acquire(timeout=timeout)
        try:
            if not acquired:
                raise DedupLockTimeout(f"timed out waiting for dedup lock: {key}")
            yield
        finally:
            if acquired:
                slot[0].release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._slots.pop(key, None)


class DedupGate:
    """Checks the in-process cache, then the recovery-file seed, then the store."""

    def __init__(
        self,
        *,
        store: Optional[InMemoryStore] = None,
        ttl: timedelta = timedelta(minutes=15),
        store_window: timedelta = timedelta(minutes=10),
        identity_lookback: timedelta = timedelta(hours=24),
        recovery_path: Optional[Path] = None,
        recovery_max_entries: int = 500,
        lock_timeout_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.store_window = store_window
        self.identity_lookback = identity_lookback
        self.recovery_path = recovery_path
        self.recovery_max_entries = recovery_max_entries
        self.lock_timeout_seconds = lock_timeout_seconds
        self.clock = clock
        self._lock = Lock()
        self._file_lock = Lock()
        self._seen: dict[str, datetime] = {}
        self._key_locks = _KeyedLocks()
        if self.recovery_path:
            self._replay_recovery_file()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    @contextmanager
    def guard(self, *keys: str) -> Iterator[None]:
        # Sorted acquisition so overlapping key sets cannot deadlock.
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._key_locks.hold(key, self.lock_timeout_seconds))
            yield

    def seen_recently(self, key: str, *, now: Optional[datetime] = None) -> bool:
        current = now or self.clock()
        with self._lock:
            self._purge_expired(current)
            seen_at = self._seen.get(key)
        if seen_at is None:
            return False
        logger.info(
            "duplicate_blocked layer=memory key=%s age_seconds=%d",
            key,
            (current - seen_at).total_seconds(),
        )
        return True

    def is_duplicate(
        self,
        key: str,
        *,
        owner_id: Optional[str],
        body: str,
        sender: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        current = now or self.clock()
        if self.seen_recently(key, now=current):
            return True
        if not self.store:
            return False
        existing = self.store.find_duplicate_message(
            dedup_key=key,
            owner_id=owner_id,
            body=body,
            sender=sender,
            body_since=current - self.store_window,
            key_since=current - self.identity_lookback,
        )
        if existing is None:
            return False
        logger.info(
            "duplicate_blocked layer=store key=%s existing_id=%s owner_id=%s",
            key,
            existing.id,
            owner_id,
        )
        self.remember(key, now=current)
        return True

    def remember(self, key: str, *, now: Optional[datetime] = None) -> None:
        current = now or self.clock()
        with self._lock:
            self._seen.setdefault(key, current)
        self._write_recovery_file(current)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
        self._write_recovery_file(self.clock())

    def close(self) -> None:
        self._write_recovery_file(self.clock())

    def _purge_expired(self, now: datetime) -> None:
        expired = [key for key, seen_at in self._seen.items() if now - seen_at > self.ttl]
        for key in expired:
            del self._seen[key]
        if expired:
            logger.info("dedup_cache_purged removed=%d remaining=%d", len(expired), len(self._seen))

    def _replay_recovery_file(self) -> None:
        path = self.recovery_path
        if not path or not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("recovery_file_unreadable path=%s error=%s", path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("recovery_file_unexpected_shape path=%s", path)
            return

        now = self.clock()
        restored: dict[str, datetime] = {}
        for item in data.get("entries", []):
            if not isinstance(item, dict):
                continue
            key = item.get("key")
            seen_ms = item.get("seen_at_ms")
            if not isinstance(key, str) or not key or not isinstance(seen_ms, (int, float)):
                continue
            seen_at = _from_millis(int(seen_ms))
            if now - seen_at <= self.ttl:
                restored[key] = min(seen_at, now)
        # Legacy shape carries bare ids without timestamps.
        for key in data.get("processedIds", []):
            if isinstance(key, str) and ("|" in key or key.startswith("sms_")):
                restored.setdefault(key, now)

        with self._lock:
            for key, seen_at in restored.items():
                self._seen.setdefault(key, seen_at)
        logger.info("recovery_file_replayed path=%s keys=%d", path, len(restored))

    def _write_recovery_file(self, now: datetime) -> None:
        path = self.recovery_path
        if not path:
            return
        with self._lock:
            self._purge_expired(now)
            recent = sorted(self._seen.items(), key=lambda item: item[1], reverse=True)
        recent = recent[: self.recovery_max_entries]
        payload = {
            "version": RECOVERY_FILE_VERSION,
            "updated_at": format_timestamp(now),
            "entries": [
                {"key": key, "seen_at_ms": _to_millis(seen_at)} for key, seen_at in recent
            ],
        }
        with self._file_lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = path.with_name(path.name + ".tmp")
                tmp_path.write_text(json.dumps(payload), encoding="utf-8")
                os.replace(tmp_path, path)
            except OSError as exc:
                logger.warning("recovery_file_write_failed path=%s error=%s", path, exc)
