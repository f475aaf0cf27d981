from __future__ import annotations

from datetime import datetime

from backend.app.models import OwnerRecord, StoredMessage
from backend.app.services.notifications import (
    ADMINS_CHANNEL,
    EventBus,
    NotificationPublisher,
    owner_channel,
)


def _message(owner_id=None) -> StoredMessage:
    return StoredMessage(
        id="msg_0001",
        owner_id=owner_id,
        body="",
        sender_phone="07700900123",
        dedup_key="SMnotify1",
        received_at_utc=datetime(2026, 10, 17, 9, 0, 0),
        created_at_utc=datetime(2026, 10, 17, 9, 0, 1),
    )


def test_owned_message_goes_to_assignee_and_admins() -> None:
    bus = EventBus()
    seen: list[tuple[str, str]] = []
    for channel in (owner_channel("booker_7"), ADMINS_CHANNEL, owner_channel("someone_else")):
        bus.subscribe(channel, lambda name, event: seen.append((name, event.owner_name)))
    owner = OwnerRecord(
        id="lead_uk", name="Amelia Hart", phone="+447700900123", assigned_owner_id="booker_7"
    )

    result = NotificationPublisher(bus).publish(_message("lead_uk"), owner)

    assert result.ok
    assert seen == [("user_booker_7", "Amelia Hart"), ("admins", "Amelia Hart")]


def test_empty_body_is_announced_as_no_content() -> None:
    bus = EventBus()
    contents: list[str] = []
    bus.subscribe(ADMINS_CHANNEL, lambda name, event: contents.append(event.content))

    NotificationPublisher(bus).publish(_message(), None)

    assert contents == ["No content"]


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    seen: list[str] = []
    unsubscribe = bus.subscribe(ADMINS_CHANNEL, lambda name, event: seen.append(event.message_id))

    NotificationPublisher(bus).publish(_message(), None)
    unsubscribe()
    NotificationPublisher(bus).publish(_message(), None)

    assert seen == ["msg_0001"]


def test_disabled_publisher_emits_nothing() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(ADMINS_CHANNEL, lambda name, event: seen.append(event.message_id))

    result = NotificationPublisher(bus, enabled=False).publish(_message(), None)

    assert result.ok
    assert seen == []
