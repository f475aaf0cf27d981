from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from backend.app.models import InboundMessage, StoredMessage
from backend.app.services.dedupe import DedupGate, DedupLockTimeout, identity_key, scope_key
from backend.app.store import InMemoryStore


def _message(**overrides) -> InboundMessage:
    values = {
        "sender": "07700900123",
        "body": "Yes please, Thursday works",
        "provider_message_id": None,
        "received_at_utc": datetime(2026, 10, 17, 9, 0, 0),
    }
    values.update(overrides)
    return InboundMessage(**values)


def test_provider_id_is_used_verbatim() -> None:
    assert identity_key(_message(provider_message_id="SM123abc")) == "SM123abc"


def test_derived_key_ignores_sender_formatting() -> None:
    first = identity_key(_message(sender="07700900123"))
    second = identity_key(_message(sender="+44 7700 900123"))

    assert first == second
    assert first.startswith("sms_")


def test_derived_key_changes_with_body_or_timestamp() -> None:
    base = identity_key(_message())

    assert identity_key(_message(body="No thanks")) != base
    assert identity_key(_message(received_at_utc=datetime(2026, 10, 17, 9, 0, 1))) != base


def test_cache_window_boundary(clock) -> None:
    gate = DedupGate(clock=clock)
    gate.remember("SMabc")

    clock.advance(minutes=14, seconds=59)
    assert gate.seen_recently("SMabc")

    clock.advance(seconds=2)
    assert not gate.seen_recently("SMabc")
    assert len(gate) == 0


def test_store_layer_matches_identity_key_and_owner_body_window(clock) -> None:
    store = InMemoryStore()
    gate = DedupGate(store=store, clock=clock)
    store.insert_message(
        StoredMessage(
            id="msg_1",
            owner_id="lead_uk",
            body="See you then",
            sender_phone="07700900123",
            dedup_key="SMold",
            received_at_utc=clock.now,
            created_at_utc=clock.now,
        )
    )

    clock.advance(minutes=9)
    assert gate.is_duplicate("SMnew", owner_id="lead_uk", body="See you then")
    assert gate.seen_recently("SMnew")

    clock.advance(minutes=2)
    assert not gate.is_duplicate("SMother", owner_id="lead_uk", body="See you then")
    assert gate.is_duplicate("SMold", owner_id="lead_uk", body="anything")
    assert not gate.is_duplicate("SMorphan", owner_id=None, body="See you then")


def test_recovery_file_seeds_a_fresh_gate(clock, recovery_path: Path) -> None:
    first = DedupGate(clock=clock, recovery_path=recovery_path)
    first.remember("SMpersisted")

    saved = json.loads(recovery_path.read_text(encoding="utf-8"))
    assert saved["entries"][0]["key"] == "SMpersisted"

    clock.advance(minutes=3)
    restarted = DedupGate(clock=clock, recovery_path=recovery_path)
    assert restarted.seen_recently("SMpersisted")


def test_recovery_file_drops_expired_entries(clock, recovery_path: Path) -> None:
    DedupGate(clock=clock, recovery_path=recovery_path).remember("SMstale")

    clock.advance(minutes=20)
    restarted = DedupGate(clock=clock, recovery_path=recovery_path)

    assert not restarted.seen_recently("SMstale")


def test_recovery_file_ignores_unknown_fields_and_accepts_legacy_ids(
    clock, recovery_path: Path
) -> None:
    recovery_path.write_text(
        json.dumps(
            {
                "version": 7,
                "writer": "future-build",
                "entries": [
                    {"key": "SMfuture", "seen_at_ms": 1792229400000, "shard": 3},
                    {"key": 42},
                    "junk",
                ],
                "processedIds": ["sms_legacy123", "bulk|2026-10-17|hello", "plain-id"],
                "lastProcessed": "2026-10-17T09:00:00Z",
            }
        ),
        encoding="utf-8",
    )

    gate = DedupGate(clock=clock, recovery_path=recovery_path)

    assert gate.seen_recently("SMfuture")
    assert gate.seen_recently("sms_legacy123")
    assert gate.seen_recently("bulk|2026-10-17|hello")
    assert not gate.seen_recently("plain-id")


def test_corrupt_recovery_file_is_skipped(clock, recovery_path: Path) -> None:
    recovery_path.write_text("{not json", encoding="utf-8")

    gate = DedupGate(clock=clock, recovery_path=recovery_path)

    assert len(gate) == 0


def test_recovery_file_is_bounded(clock, recovery_path: Path) -> None:
    gate = DedupGate(clock=clock, recovery_path=recovery_path, recovery_max_entries=10)
    for index in range(25):
        gate.remember(f"SM{index:03d}")
        clock.advance(seconds=1)

    saved = json.loads(recovery_path.read_text(encoding="utf-8"))

    assert len(saved["entries"]) == 10
    assert saved["entries"][0]["key"] == "SM024"


def test_clear_empties_the_cache(clock) -> None:
    gate = DedupGate(clock=clock, ttl=timedelta(minutes=15))
    gate.remember("SMone")

    gate.clear()

    assert not gate.seen_recently("SMone")


def test_scope_key_separates_orphans_by_sender() -> None:
    assert scope_key("lead_uk", "07700900123", "STOP") == scope_key("lead_uk", "+447700900123", "STOP")
    assert scope_key(None, "07999111222", "STOP") != scope_key(None, "07888333444", "STOP")
    assert scope_key(None, "07999111222", "STOP") != scope_key("lead_uk", "07999111222", "STOP")


def test_guard_holds_every_key_it_was_given(clock) -> None:
    gate = DedupGate(clock=clock, lock_timeout_seconds=0.05)

    with gate.guard("SMone", "scope_a"):
        with pytest.raises(DedupLockTimeout):
            with gate.guard("scope_a", "SMtwo"):
                pass

    with gate.guard("scope_a", "SMtwo"):
        pass


def test_store_layer_scopes_orphans_to_their_sender(clock) -> None:
    store = InMemoryStore()
    gate = DedupGate(store=store, clock=clock)
    store.insert_message(
        StoredMessage(
            id="msg_orphan",
            owner_id=None,
            body="STOP",
            sender_phone="07999111222",
            dedup_key="SMfirst",
            received_at_utc=clock.now,
            created_at_utc=clock.now,
        )
    )
    clock.advance(minutes=1)

    assert not gate.is_duplicate("SMsecond", owner_id=None, body="STOP", sender="07888333444")
    assert gate.is_duplicate("SMthird", owner_id=None, body="STOP", sender="07999111222")
