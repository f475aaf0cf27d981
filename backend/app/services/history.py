from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from backend.app.models import SMS_RECEIVED_ACTION, HistoryEntry, StoredMessage

logger = logging.getLogger("sms_inbox.history")


def parse_history_log(raw: Any) -> list[HistoryEntry]:
    """Decode a stored history log. Strings, lists and junk are all accepted."""
    if raw is None:
        return []
    value = raw
    if isinstance(raw, (str, bytes)):
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("history_log_unreadable preview=%r", str(raw)[:100])
            return []
    if not isinstance(value, list):
        return []

    entries: list[HistoryEntry] = []
    for item in value:
        if isinstance(item, HistoryEntry):
            entries.append(item)
            continue
        if not isinstance(item, dict):
            continue
        try:
            entries.append(HistoryEntry.model_validate(item))
        except ValidationError:
            continue
    return entries


def dump_history_log(entries: list[HistoryEntry]) -> str:
    return json.dumps([entry.model_dump(mode="json") for entry in entries])


def received_sms_entry(message: StoredMessage) -> HistoryEntry:
    return HistoryEntry(
        action=SMS_RECEIVED_ACTION,
        timestamp=message.received_at_utc,
        details={
            "body": message.body,
            "sender": message.sender_phone,
            "direction": "received",
            "channel": message.channel.value,
            "status": "received",
            "read": False,
            "message_id": message.id,
        },
    )


def _entry_body(entry: HistoryEntry) -> Any:
    return entry.details.get("body", entry.details.get("message"))


def has_recent_entry(
    entries: list[HistoryEntry],
    *,
    body: str,
    at: datetime,
    window: timedelta,
) -> bool:
    for entry in entries:
        if entry.action != SMS_RECEIVED_ACTION or _entry_body(entry) != body:
            continue
        if abs(entry.timestamp - at) < window:
            return True
    return False
