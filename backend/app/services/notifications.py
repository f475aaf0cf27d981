from __future__ import annotations

import logging
from collections import defaultdict
from threading import Lock
from typing import Callable, Optional

from backend.app.models import NotificationEvent, OwnerRecord, SideEffectResult, StoredMessage

logger = logging.getLogger("sms_inbox.notifications")

ADMINS_CHANNEL = "admins"

Listener = Callable[[str, NotificationEvent], None]


def owner_channel(assigned_owner_id: str) -> str:
    return f"user_{assigned_owner_id}"


class EventBus:
    """In-process pub/sub keyed by channel name."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, channel: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners[channel].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners.get(channel, []):
                    self._listeners[channel].remove(listener)

        return unsubscribe

    def emit(self, channel: str, event: NotificationEvent) -> int:
        with self._lock:
            listeners = list(self._listeners.get(channel, []))
        for listener in listeners:
            listener(channel, event)
        return len(listeners)


class NotificationPublisher:
    def __init__(self, bus: EventBus, *, enabled: bool = True) -> None:
        self.bus = bus
        self.enabled = enabled

    def publish(
        self, message: StoredMessage, owner: Optional[OwnerRecord]
    ) -> SideEffectResult:
        if not self.enabled:
            return SideEffectResult.success()

        event = NotificationEvent(
            phone=message.sender_phone,
            content=message.body or "No content",
            timestamp=message.received_at_utc,
            owner_id=owner.id if owner else None,
            owner_name=owner.name if owner else None,
            channel=message.channel,
            message_id=message.id,
        )
        channels: list[str] = []
        if owner and owner.assigned_owner_id:
            channels.append(owner_channel(owner.assigned_owner_id))
        channels.append(ADMINS_CHANNEL)

        failures: list[str] = []
        for channel in channels:
            try:
                self.bus.emit(channel, event)
            except Exception as exc:
                logger.warning(
                    "notification_failed channel=%s message_id=%s error=%s",
                    channel,
                    message.id,
                    exc,
                )
                failures.append(f"{channel}: {exc}")
        if failures:
            return SideEffectResult.failure("; ".join(failures))
        logger.info("notification_sent message_id=%s channels=%s", message.id, ",".join(channels))
        return SideEffectResult.success()
