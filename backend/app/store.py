from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    SMS_HISTORY_PREFIX,
    HistoryEntry,
    MessageChannel,
    OwnerRecord,
    StoredMessage,
)
from backend.app.services.history import has_recent_entry

if TYPE_CHECKING:
    from backend.app.persistence import SqlPersistence

logger = logging.getLogger("sms_inbox.store")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreNotFoundError(Exception):
    pass


class StorePersistenceError(Exception):
    pass


class InMemoryStore:
    def __init__(self, persistence: Optional["SqlPersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.owners: dict[str, OwnerRecord] = {}
        self.owner_history: dict[str, list[HistoryEntry]] = {}
        self.messages: dict[str, StoredMessage] = {}
        self._by_dedup_key: dict[str, StoredMessage] = {}
        self._recent: deque[StoredMessage] = deque()

        if self.persistence:
            for owner, history in self.persistence.list_owners():
                self.owners[owner.id] = owner
                self.owner_history[owner.id] = history
            for message in reversed(self.persistence.list_messages()):
                self._index(message)

    def upsert_owner(self, owner: OwnerRecord) -> OwnerRecord:
        with self._lock:
            history = self.owner_history.get(owner.id, [])
            self._mirror(lambda p: p.upsert_owner(owner, history), action="upsert_owner")
            self.owners[owner.id] = owner
            self.owner_history.setdefault(owner.id, [])
            return owner

    def get_owner(self, owner_id: str) -> OwnerRecord:
        owner = self.owners.get(owner_id)
        if not owner:
            raise StoreNotFoundError(f"owner not found: {owner_id}")
        return owner

    def list_owners(self) -> list[OwnerRecord]:
        with self._lock:
            return self._newest_first(self.owners.values())

    def find_owners_by_phone(self, phone: str, limit: int = 1) -> list[OwnerRecord]:
        with self._lock:
            matches = [owner for owner in self.owners.values() if owner.phone == phone]
            return self._newest_first(matches)[: max(limit, 0)]

    def search_owners_by_phone_fragment(self, fragment: str, limit: int = 5) -> list[OwnerRecord]:
        needle = fragment.strip().lower()
        if not needle:
            return []
        with self._lock:
            matches = [
                owner for owner in self.owners.values() if needle in owner.phone.lower()
            ]
            return self._newest_first(matches)[: max(limit, 0)]

    def find_duplicate_message(
        self,
        *,
        dedup_key: str,
        owner_id: Optional[str],
        body: str,
        body_since: datetime,
        key_since: datetime,
        sender: Optional[str] = None,
        channel: MessageChannel = MessageChannel.sms,
    ) -> Optional[StoredMessage]:
        with self._lock:
            by_key = self._by_dedup_key.get(dedup_key)
            if by_key and by_key.channel == channel and by_key.created_at_utc >= key_since:
                return by_key

            while self._recent and self._recent[0].created_at_utc < body_since:
                self._recent.popleft()
            for message in reversed(self._recent):
                if message.channel != channel or message.created_at_utc < body_since:
                    continue
                if message.owner_id != owner_id or message.body != body:
                    continue
                # Unattributed messages only collide with the same sender.
                if owner_id is None and sender is not None and message.sender_phone != sender:
                    continue
                return message
            return None

    def insert_message(self, message: StoredMessage) -> StoredMessage:
        with self._lock:
            self._mirror(lambda p: p.insert_message(message), action="insert_message")
            self._index(message)
            return message

    def list_messages(
        self,
        *,
        owner_id: Optional[str] = None,
        orphans_only: bool = False,
        channel: MessageChannel = MessageChannel.sms,
        limit: int = 100,
    ) -> list[StoredMessage]:
        with self._lock:
            rows = [
                message
                for message in self.messages.values()
                if message.channel == channel
                and (not orphans_only or message.owner_id is None)
                and (owner_id is None or message.owner_id == owner_id)
            ]
        rows.sort(key=lambda item: item.created_at_utc, reverse=True)
        return rows[: max(1, min(limit, 500))]

    def append_history_entry(
        self, owner_id: str, entry: HistoryEntry, *, dedup_window: timedelta
    ) -> bool:
        with self._lock:
            self.get_owner(owner_id)
            history = self.owner_history.get(owner_id, [])
            if has_recent_entry(
                history,
                body=entry.details.get("body", ""),
                at=entry.timestamp,
                window=dedup_window,
            ):
                logger.info("history_append_skipped owner_id=%s reason=recent_duplicate", owner_id)
                return False
            updated = [entry, *history]
            self._mirror(
                lambda p: p.update_owner_history(owner_id, updated),
                action="update_owner_history",
            )
            self.owner_history[owner_id] = updated
            return True

    def list_history(self, owner_id: str) -> list[HistoryEntry]:
        with self._lock:
            self.get_owner(owner_id)
            return list(self.owner_history.get(owner_id, []))

    def purge_channel(
        self,
        channel: MessageChannel = MessageChannel.sms,
        history_prefix: str = SMS_HISTORY_PREFIX,
    ) -> tuple[int, int]:
        with self._lock:
            doomed = [key for key, item in self.messages.items() if item.channel == channel]
            self._mirror(lambda p: p.delete_messages(channel), action="delete_messages")
            for key in doomed:
                del self.messages[key]
            self._by_dedup_key = {
                key: item for key, item in self._by_dedup_key.items() if item.channel != channel
            }
            self._recent = deque(item for item in self._recent if item.channel != channel)

            owners_updated = 0
            for owner_id, history in list(self.owner_history.items()):
                kept = [entry for entry in history if not entry.action.startswith(history_prefix)]
                if len(kept) == len(history):
                    continue
                try:
                    self._mirror(
                        lambda p: p.update_owner_history(owner_id, kept),
                        action="update_owner_history",
                    )
                except StorePersistenceError:
                    continue
                self.owner_history[owner_id] = kept
                owners_updated += 1
            logger.info(
                "channel_purged channel=%s deleted_messages=%d owners_updated=%d",
                channel.value,
                len(doomed),
                owners_updated,
            )
            return len(doomed), owners_updated

    def _index(self, message: StoredMessage) -> None:
        self.messages[message.id] = message
        self._by_dedup_key[message.dedup_key] = message
        self._recent.append(message)

    def _mirror(self, operation, *, action: str) -> None:
        if not self.persistence:
            return
        try:
            operation(self.persistence)
        except SQLAlchemyError as exc:
            logger.error("persistence_failed action=%s error=%s", action, exc)
            raise StorePersistenceError(f"{action} failed: {exc}") from exc

    @staticmethod
    def _newest_first(owners) -> list[OwnerRecord]:
        return sorted(owners, key=lambda owner: owner.created_at_utc, reverse=True)
