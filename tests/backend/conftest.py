from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.models import OwnerRecord
from backend.app.services.dedupe import DedupGate
from backend.app.services.ingestion import IngestionPipeline
from backend.app.services.notifications import EventBus, NotificationPublisher
from backend.app.store import InMemoryStore


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 17, 9, 30, 0))


@pytest.fixture()
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.upsert_owner(
        OwnerRecord(
            id="lead_uk",
            name="Amelia Hart",
            phone="+447700900123",
            assigned_owner_id="booker_7",
            created_at_utc=datetime(2026, 1, 5, 10, 0, 0),
        )
    )
    return store


@pytest.fixture()
def recovery_path(tmp_path: Path) -> Path:
    return tmp_path / "processed_sms_messages.json"


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


def build_pipeline(
    store: InMemoryStore, clock: FakeClock, bus: EventBus, recovery_path: Path | None = None
) -> IngestionPipeline:
    gate = DedupGate(store=store, clock=clock, recovery_path=recovery_path)
    return IngestionPipeline(
        store=store,
        gate=gate,
        notifier=NotificationPublisher(bus),
        clock=clock,
    )


@pytest.fixture()
def pipeline(store, clock, bus, recovery_path) -> IngestionPipeline:
    return build_pipeline(store, clock, bus, recovery_path)


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("SMS_WEBHOOK_SECRET", "")
    monkeypatch.setenv("DEDUP_RECOVERY_FILE", str(tmp_path / "processed_sms_messages.json"))
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def make_pipeline(clock, bus):
    def factory(store: InMemoryStore, recovery_path: Path | None = None) -> IngestionPipeline:
        return build_pipeline(store, clock, bus, recovery_path)

    return factory
