from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import parse_qsl

from pydantic import ValidationError

from backend.app.models import InboundMessage, as_naive_utc, utc_now

BODY_FIELDS = ("text", "Body", "message", "messageText", "sms", "content", "body")
SENDER_FIELDS = ("sender", "From", "from", "phone", "msisdn", "source")
MESSAGE_ID_FIELDS = ("messageId", "messageid", "id", "message_id", "MessageSid", "sid")
TIMESTAMP_FIELDS = (
    "timestamp",
    "receivedAt",
    "createdAt",
    "dateTime",
    "date",
    "SmsTimestamp",
    "received_at",
)

# Epoch values above this are milliseconds.
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000


class InboundValidationError(Exception):
    pass


def decode_body(raw_body: bytes, content_type: Optional[str]) -> dict[str, Any]:
    text = raw_body.decode("utf-8", errors="replace").strip()
    if not text:
        raise InboundValidationError("empty payload")
    media_type = (content_type or "").split(";", 1)[0].strip().lower()

    if media_type == "application/x-www-form-urlencoded":
        return dict(parse_qsl(text, keep_blank_values=True))
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        if media_type == "application/json":
            raise InboundValidationError("invalid json payload") from exc
        form = dict(parse_qsl(text, keep_blank_values=True))
        if not form:
            raise InboundValidationError("unrecognised payload encoding") from exc
        return form
    if not isinstance(data, dict):
        raise InboundValidationError("payload must be an object")
    return data


def first_present(data: dict[str, Any], candidates: tuple[str, ...]) -> Optional[str]:
    for key in candidates:
        value = data.get(key)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    candidate = value.strip()
    try:
        number = float(candidate)
    except ValueError:
        number = None
    if number is not None:
        seconds = number / 1000 if number > _EPOCH_MILLIS_THRESHOLD else number
        try:
            return datetime(1970, 1, 1) + timedelta(seconds=seconds)
        except OverflowError:
            return None
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate.replace(" ", "T", 1))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return as_naive_utc(parsed)


def build_inbound_message(
    data: dict[str, Any], *, now: Optional[datetime] = None
) -> InboundMessage:
    body = first_present(data, BODY_FIELDS)
    sender = first_present(data, SENDER_FIELDS)
    if not body:
        raise InboundValidationError("inbound sms missing body")
    if not sender:
        raise InboundValidationError("inbound sms missing sender")

    received_at = parse_timestamp(first_present(data, TIMESTAMP_FIELDS)) or now or utc_now()
    try:
        return InboundMessage(
            sender=sender,
            body=body,
            provider_message_id=first_present(data, MESSAGE_ID_FIELDS),
            received_at_utc=received_at,
        )
    except ValidationError as exc:
        raise InboundValidationError(f"invalid inbound sms payload: {exc.errors()}") from exc
