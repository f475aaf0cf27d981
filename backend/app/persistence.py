from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import HistoryEntry, MessageChannel, OwnerRecord, StoredMessage, utc_now
from backend.app.services.history import dump_history_log, parse_history_log


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


def _connect_args(database_url: str, timeout_seconds: int) -> dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"timeout": timeout_seconds, "check_same_thread": False}
    if database_url.startswith("postgresql"):
        return {"connect_timeout": timeout_seconds}
    return {}


class SqlPersistence:
    """
    Durable mirror of the record store. Works with SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str, *, timeout_seconds: int = 5) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
            connect_args=_connect_args(self.database_url, timeout_seconds),
        )
        self.metadata = MetaData()
        self.owners = Table(
            "owners",
            self.metadata,
            Column("id", String(120), primary_key=True),
            Column("name", String(200), nullable=False),
            Column("phone", String(60), nullable=False, index=True),
            Column("assigned_owner_id", String(120), nullable=True),
            Column("history_json", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.messages = Table(
            "messages",
            self.metadata,
            Column("id", String(120), primary_key=True),
            Column("owner_id", String(120), nullable=True, index=True),
            Column("channel", String(20), nullable=False),
            Column("status", String(20), nullable=False),
            Column("body", Text, nullable=False),
            Column("sender_phone", String(60), nullable=False),
            Column("dedup_key", String(255), nullable=False, index=True),
            Column("received_at_utc", DateTime, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("read_status", Integer, nullable=False),
            Column("note", Text, nullable=True),
            Column("needs_triage", Integer, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def upsert_owner(self, record: OwnerRecord, history: list[HistoryEntry]) -> None:
        with self._lock:
            payload = {
                "name": record.name,
                "phone": record.phone,
                "assigned_owner_id": record.assigned_owner_id,
                "history_json": dump_history_log(history),
                "created_at_utc": record.created_at_utc,
            }
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.owners.c.id).where(self.owners.c.id == record.id)
                ).first()
                if existing:
                    conn.execute(
                        self.owners.update().where(self.owners.c.id == record.id).values(**payload)
                    )
                else:
                    conn.execute(self.owners.insert().values(id=record.id, **payload))

    def update_owner_history(self, owner_id: str, history: list[HistoryEntry]) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.owners.update()
                    .where(self.owners.c.id == owner_id)
                    .values(history_json=dump_history_log(history))
                )

    def list_owners(self) -> list[tuple[OwnerRecord, list[HistoryEntry]]]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        self.owners.c.id,
                        self.owners.c.name,
                        self.owners.c.phone,
                        self.owners.c.assigned_owner_id,
                        self.owners.c.history_json,
                        self.owners.c.created_at_utc,
                    ).order_by(self.owners.c.created_at_utc.desc())
                ).all()
        output: list[tuple[OwnerRecord, list[HistoryEntry]]] = []
        for row in rows:
            owner = OwnerRecord(
                id=row.id,
                name=row.name,
                phone=row.phone,
                assigned_owner_id=row.assigned_owner_id,
                created_at_utc=row.created_at_utc,
            )
            output.append((owner, parse_history_log(row.history_json)))
        return output

    def insert_message(self, record: StoredMessage) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.messages.insert().values(
                        id=record.id,
                        owner_id=record.owner_id,
                        channel=record.channel.value,
                        status=record.status,
                        body=record.body,
                        sender_phone=record.sender_phone,
                        dedup_key=record.dedup_key,
                        received_at_utc=record.received_at_utc,
                        created_at_utc=record.created_at_utc,
                        read_status=1 if record.read else 0,
                        note=record.note,
                        needs_triage=1 if record.needs_triage else 0,
                    )
                )

    def list_messages(self, limit: int = 5000) -> list[StoredMessage]:
        safe_limit = max(1, min(limit, 50000))
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        self.messages.c.id,
                        self.messages.c.owner_id,
                        self.messages.c.channel,
                        self.messages.c.status,
                        self.messages.c.body,
                        self.messages.c.sender_phone,
                        self.messages.c.dedup_key,
                        self.messages.c.received_at_utc,
                        self.messages.c.created_at_utc,
                        self.messages.c.read_status,
                        self.messages.c.note,
                        self.messages.c.needs_triage,
                    )
                    .order_by(self.messages.c.created_at_utc.desc())
                    .limit(safe_limit)
                ).all()
        return [
            StoredMessage(
                id=row.id,
                owner_id=row.owner_id,
                channel=MessageChannel(row.channel),
                status=row.status,
                body=row.body,
                sender_phone=row.sender_phone,
                dedup_key=row.dedup_key,
                received_at_utc=row.received_at_utc,
                created_at_utc=row.created_at_utc or utc_now(),
                read=bool(row.read_status),
                note=row.note,
                needs_triage=bool(row.needs_triage),
            )
            for row in rows
        ]

    def delete_messages(self, channel: MessageChannel) -> int:
        with self._lock:
            statement = delete(self.messages).where(self.messages.c.channel == channel.value)
            with self.engine.begin() as conn:
                result = conn.execute(statement)
            return result.rowcount or 0
