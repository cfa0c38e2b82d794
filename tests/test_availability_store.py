from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from fleetslot.domain.conflicts import with_reservation, with_total_slots
from fleetslot.domain.errors import ConcurrentModificationError, TimeConflictError
from fleetslot.domain.models import SlotStatus
from fleetslot.repository import availability_store
from fleetslot.repository.availability_store import AvailabilityStore
from fleetslot.repository.data_repository import DataRepository
from fleetslot.utils.config import get_settings


T0 = datetime(2030, 1, 1, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        cas_retry_backoff_seconds=0.0,
        **overrides,
    )


def _build_store(tmp_path, filename: str, **overrides) -> AvailabilityStore:
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    return AvailabilityStore(repository, settings=settings)


def _reserve(campaign_id: str, start_day: int, end_day: int):
    def mutate(record):
        return with_reservation(
            record,
            campaign_id=campaign_id,
            start=T0 + timedelta(days=start_day),
            end=T0 + timedelta(days=end_day),
            now=T0,
        )

    return mutate


def test_get_creates_default_record_lazily(tmp_path):
    store = _build_store(tmp_path, "lazy.db")

    assert not store.has_record("MAT-1")
    record = store.get("MAT-1")

    assert store.has_record("MAT-1")
    assert record.total_slots == 5
    assert record.occupied_slots == 0
    assert record.available_slots == 5
    assert record.status == SlotStatus.AVAILABLE
    assert record.version == 0


def test_list_by_ids_does_not_persist_defaults(tmp_path):
    store = _build_store(tmp_path, "batch.db")
    store.get("MAT-1")

    records = store.list_by_ids(["MAT-2", "MAT-1"])

    assert [record.material_id for record in records] == ["MAT-2", "MAT-1"]
    assert records[0].available_slots == 5
    assert not store.has_record("MAT-2")
    assert [record.material_id for record in store.list_all()] == ["MAT-1"]


def test_compare_and_apply_persists_and_bumps_version(tmp_path):
    store = _build_store(tmp_path, "write.db")

    written = store.compare_and_apply("MAT-1", _reserve("C1", 0, 30))
    reloaded = store.get("MAT-1")

    assert written.version == 1
    assert reloaded.version == 1
    assert reloaded.occupied_slots == 1
    assert reloaded.reservations[0].slot_number == 1
    assert reloaded.reservations[0].end_time == T0 + timedelta(days=30)
    assert store.find_materials_holding("C1") == ["MAT-1"]


def test_mutator_returning_none_writes_nothing(tmp_path):
    store = _build_store(tmp_path, "noop.db")
    store.compare_and_apply("MAT-1", _reserve("C1", 0, 30))

    result = store.compare_and_apply("MAT-1", lambda record: None)

    assert result.version == 1
    assert store.get("MAT-1").version == 1


def test_mutator_error_propagates_without_retry(tmp_path):
    store = _build_store(tmp_path, "error.db")
    calls = []

    def mutate(record):
        calls.append(record.version)
        raise TimeConflictError("overlap", material_id=record.material_id)

    with pytest.raises(TimeConflictError):
        store.compare_and_apply("MAT-1", mutate)
    assert calls == [0]


def test_lost_race_retries_against_fresh_record(tmp_path):
    store = _build_store(tmp_path, "retry.db")
    calls = []

    def mutate(record):
        calls.append(record.version)
        if len(calls) == 1:
            # Another writer commits between our load and our write.
            store.compare_and_apply(
                "MAT-1",
                lambda current: with_total_slots(current, total_slots=6, now=T0),
            )
        return _reserve("C1", 0, 30)(record)

    result = store.compare_and_apply("MAT-1", mutate)

    assert calls == [0, 1]
    assert result.version == 2
    reloaded = store.get("MAT-1")
    assert reloaded.total_slots == 6
    assert reloaded.occupied_slots == 1


def test_retry_budget_exhaustion_raises(tmp_path):
    store = _build_store(tmp_path, "exhausted.db", cas_max_attempts=3)
    calls = []

    def always_loses(record):
        calls.append(record.version)
        store.compare_and_apply(
            "MAT-1",
            lambda current: with_total_slots(current, total_slots=current.total_slots + 1, now=T0),
        )
        return _reserve("C1", 0, 30)(record)

    with pytest.raises(ConcurrentModificationError):
        store.compare_and_apply("MAT-1", always_loses)

    assert len(calls) == 3
    assert store.get("MAT-1").occupied_slots == 0


def test_invariant_violation_is_never_written(tmp_path):
    store = _build_store(tmp_path, "invariant.db")
    store.compare_and_apply("MAT-1", _reserve("C1", 0, 30))

    def overlap(record):
        return replace(
            record,
            reservations=record.reservations
            + (replace(record.reservations[0], campaign_id="C2", slot_number=2),),
        )

    with pytest.raises(ValueError):
        store.compare_and_apply("MAT-1", overlap)
    assert store.get("MAT-1").occupied_slots == 1


def test_list_expired_reservations_uses_inclusive_end(tmp_path):
    store = _build_store(tmp_path, "expired.db")
    store.compare_and_apply("MAT-1", _reserve("C1", 0, 10))
    store.compare_and_apply("MAT-1", _reserve("C2", 10, 20))

    expired = store.list_expired_reservations(T0 + timedelta(days=10))

    assert [(material_id, reservation.campaign_id) for material_id, reservation in expired] == [
        ("MAT-1", "C1")
    ]


def test_batch_read_sees_one_committed_state(tmp_path, monkeypatch):
    store = _build_store(tmp_path, "snapshot.db")
    store.compare_and_apply("MAT-1", _reserve("A", 0, 5))
    database_path = store._settings.database_path
    attempted_writes: list[bool] = []
    original = availability_store._row_to_reservation

    def read_row_during_write(row):
        if not attempted_writes:
            writer = sqlite3.connect(database_path, timeout=0)
            try:
                writer.execute(
                    "UPDATE MaterialAvailability SET version = version + 1 WHERE material_id = ?;",
                    ("MAT-1",),
                )
                with pytest.raises(sqlite3.OperationalError):
                    writer.commit()
                writer.rollback()
            finally:
                writer.close()
            attempted_writes.append(True)
        return original(row)

    monkeypatch.setattr(availability_store, "_row_to_reservation", read_row_during_write)
    record = store.list_by_ids(["MAT-1"])[0]
    monkeypatch.undo()

    assert attempted_writes == [True]
    assert record.version == 1
    assert store.get("MAT-1").version == 1
