from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from backend.app.models import (
    InboundMessage,
    IngestionResult,
    IngestionStatus,
    OwnerRecord,
    PipelineState,
    SideEffectResult,
    StoredMessage,
    utc_now,
)
from backend.app.services.dedupe import DedupGate, DedupLockTimeout, identity_key, scope_key
from backend.app.services.history import received_sms_entry
from backend.app.services.notifications import NotificationPublisher
from backend.app.services.payloads import InboundValidationError, build_inbound_message
from backend.app.services.phones import DEFAULT_COUNTRY_CODE
from backend.app.services.resolver import OwnerResolver
from backend.app.store import InMemoryStore, StoreNotFoundError, StorePersistenceError, new_id

logger = logging.getLogger("sms_inbox.ingestion")


class PersistenceFailure(Exception):
    """Transient infrastructure fault. The provider should redeliver."""


class IngestionPipeline:
    def __init__(
        self,
        *,
        store: InMemoryStore,
        gate: DedupGate,
        notifier: NotificationPublisher,
        resolver: Optional[OwnerResolver] = None,
        country_code: str = DEFAULT_COUNTRY_CODE,
        history_window: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utc_now,
        on_result: Optional[Callable[[IngestionResult], None]] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.notifier = notifier
        self.country_code = country_code
        self.resolver = resolver or OwnerResolver(store, country_code=country_code)
        self.history_window = history_window
        self.clock = clock
        self.on_result = on_result

    def handle_payload(self, data: dict[str, Any]) -> IngestionResult:
        try:
            message = build_inbound_message(data, now=self.clock())
        except InboundValidationError as exc:
            return self.reject(str(exc), fields=sorted(data))
        return self.ingest(message)

    def reject(self, reason: str, *, fields: Optional[list[str]] = None) -> IngestionResult:
        logger.warning("inbound_rejected reason=%s fields=%s", reason, (fields or [])[:20])
        return self._finish(
            IngestionResult(
                status=IngestionStatus.error,
                states=(PipelineState.received, PipelineState.rejected),
                detail=reason,
            )
        )

    def ingest(self, message: InboundMessage) -> IngestionResult:
        states = [PipelineState.received, PipelineState.validated]
        key = identity_key(message, self.country_code)
        logger.info(
            "inbound_received sender=%s key=%s provider_id=%s",
            message.sender,
            key,
            message.provider_message_id or "-",
        )

        try:
            owner = self.resolver.resolve(message.sender)
        except StorePersistenceError as exc:
            raise PersistenceFailure(f"owner lookup failed: {exc}") from exc
        states.append(PipelineState.resolved if owner else PipelineState.orphan)
        owner_id = owner.id if owner else None

        try:
            with self.gate.guard(key, scope_key(owner_id, message.sender, message.body)):
                now = self.clock()
                duplicate = self.gate.is_duplicate(
                    key,
                    owner_id=owner_id,
                    body=message.body,
                    sender=message.sender,
                    now=now,
                )
                states.append(PipelineState.dedup_checked)
                if duplicate:
                    states.append(PipelineState.duplicate_ignored)
                    return self._finish(
                        IngestionResult(
                            status=IngestionStatus.duplicate_ignored,
                            states=tuple(states),
                            dedup_key=key,
                            owner_id=owner_id,
                        )
                    )
                stored = self.store.insert_message(self._build_stored(message, owner, key, now))
                states.append(PipelineState.persisted)
                self.gate.remember(key, now=now)
        except DedupLockTimeout as exc:
            raise PersistenceFailure(str(exc)) from exc
        except StorePersistenceError as exc:
            logger.error("inbound_persist_failed key=%s error=%s", key, exc)
            raise PersistenceFailure(f"message persistence failed: {exc}") from exc

        history: Optional[SideEffectResult] = None
        if owner:
            history = self._append_history(owner, stored)
            if history.ok and history.detail is None:
                states.append(PipelineState.history_appended)

        notification = self.notifier.publish(stored, owner)
        if notification.ok:
            states.append(PipelineState.notified)

        if owner:
            logger.info("inbound_stored message_id=%s owner_id=%s", stored.id, owner.id)
        else:
            logger.warning(
                "inbound_orphaned message_id=%s sender=%s needs_triage=true",
                stored.id,
                message.sender,
            )
        return self._finish(
            IngestionResult(
                status=(
                    IngestionStatus.received if owner else IngestionStatus.unknown_sender_skipped
                ),
                states=tuple(states),
                dedup_key=key,
                message=stored,
                owner_id=owner_id,
                history=history,
                notification=notification,
            )
        )

    def _build_stored(
        self,
        message: InboundMessage,
        owner: Optional[OwnerRecord],
        key: str,
        now: datetime,
    ) -> StoredMessage:
        return StoredMessage(
            id=new_id("msg"),
            owner_id=owner.id if owner else None,
            body=message.body,
            sender_phone=message.sender,
            dedup_key=key,
            received_at_utc=message.received_at_utc,
            created_at_utc=now,
            note=None if owner else f"No matching owner found for phone: {message.sender}",
            needs_triage=owner is None,
        )

    def _append_history(self, owner: OwnerRecord, stored: StoredMessage) -> SideEffectResult:
        try:
            appended = self.store.append_history_entry(
                owner.id, received_sms_entry(stored), dedup_window=self.history_window
            )
        except (StorePersistenceError, StoreNotFoundError) as exc:
            logger.warning(
                "history_append_failed owner_id=%s message_id=%s error=%s",
                owner.id,
                stored.id,
                exc,
            )
            return SideEffectResult.failure(str(exc))
        if not appended:
            return SideEffectResult.success(detail="recent_duplicate")
        return SideEffectResult.success()

    def _finish(self, result: IngestionResult) -> IngestionResult:
        if self.on_result:
            self.on_result(result)
        return result
