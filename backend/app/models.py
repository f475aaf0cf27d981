from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class MessageChannel(str, Enum):
    sms = "sms"


class IngestionStatus(str, Enum):
    received = "received"
    duplicate_ignored = "duplicate_ignored"
    unknown_sender_skipped = "unknown_sender_skipped"
    error = "error"


class PipelineState(str, Enum):
    received = "RECEIVED"
    validated = "VALIDATED"
    resolved = "RESOLVED"
    orphan = "ORPHAN"
    dedup_checked = "DEDUP_CHECKED"
    persisted = "PERSISTED"
    history_appended = "HISTORY_APPENDED"
    notified = "NOTIFIED"
    duplicate_ignored = "DUPLICATE_IGNORED"
    rejected = "REJECTED"


SMS_RECEIVED_ACTION = "SMS_RECEIVED"
SMS_HISTORY_PREFIX = "SMS_"


class InboundMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender: str = Field(min_length=1)
    body: str = Field(min_length=1)
    provider_message_id: Optional[str] = None
    received_at_utc: datetime

    @field_validator("received_at_utc")
    @classmethod
    def normalize_received_at(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


class OwnerRecord(BaseModel):
    id: str
    name: str
    phone: str
    assigned_owner_id: Optional[str] = None
    created_at_utc: datetime = Field(default_factory=utc_now)


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: datetime) -> datetime:
        return as_naive_utc(value)


class StoredMessage(BaseModel):
    id: str
    owner_id: Optional[str]
    channel: MessageChannel = MessageChannel.sms
    status: str = "received"
    body: str
    sender_phone: str
    dedup_key: str
    received_at_utc: datetime
    created_at_utc: datetime
    read: bool = False
    note: Optional[str] = None
    needs_triage: bool = False


class NotificationEvent(BaseModel):
    name: str = "message_received"
    type: str = SMS_RECEIVED_ACTION
    phone: str
    content: str
    timestamp: datetime
    owner_id: Optional[str]
    owner_name: Optional[str]
    direction: str = "received"
    channel: MessageChannel = MessageChannel.sms
    message_id: str


@dataclass(frozen=True)
class SideEffectResult:
    ok: bool
    error: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, detail: Optional[str] = None) -> "SideEffectResult":
        return cls(ok=True, detail=detail)

    @classmethod
    def failure(cls, error: str) -> "SideEffectResult":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class IngestionResult:
    status: IngestionStatus
    states: tuple[PipelineState, ...]
    dedup_key: Optional[str] = None
    message: Optional[StoredMessage] = None
    owner_id: Optional[str] = None
    detail: Optional[str] = None
    history: Optional[SideEffectResult] = None
    notification: Optional[SideEffectResult] = None

    @property
    def state(self) -> PipelineState:
        return self.states[-1]


class SmsWebhookResponse(BaseModel):
    status: IngestionStatus
    detail: Optional[str] = None
    message_id: Optional[str] = None


class OrphanMessageItem(BaseModel):
    message_id: str
    sender_phone: str
    body: str
    note: Optional[str]
    received_at_utc: datetime
    created_at_utc: datetime


class HistoryFeedResponse(BaseModel):
    owner_id: str
    owner_name: str
    entries: list[HistoryEntry]


class PurgeResponse(BaseModel):
    success: bool
    deleted_messages: int
    owners_updated: int
