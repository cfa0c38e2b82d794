from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from fleetslot.domain.models import AvailabilityRecord, Material, SlotStatus
from fleetslot.repository.availability_store import AvailabilityStore
from fleetslot.repository.data_repository import DataRepository
from fleetslot.services.allocation_service import AllocationService
from fleetslot.services.selection_service import (
    LexicographicTieBreak,
    MaterialSelector,
    PriorityTieBreak,
    rank_materials,
)
from fleetslot.utils.config import get_settings


T0 = datetime(2030, 1, 1, tzinfo=timezone.utc)
T1 = T0 + timedelta(days=30)


def _build_test_settings(tmp_path, filename: str, **overrides):
    get_settings.cache_clear()
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        cas_retry_backoff_seconds=0.0,
        **overrides,
    )


def _material(material_id: str) -> Material:
    return Material(material_id, "HEADDRESS", "CAR", "DIGITAL")


def _empty(material_id: str, **fields) -> AvailabilityRecord:
    record = AvailabilityRecord(
        material_id=material_id,
        total_slots=5,
        reservations=(),
        status=SlotStatus.AVAILABLE,
        version=0,
        updated_at=T0,
    )
    return replace(record, **fields)


def test_priority_tie_break_ranks_unknown_ids_last():
    tie_break = PriorityTieBreak(["B", "A"])
    ordered = sorted([_material("Z"), _material("A"), _material("C"), _material("B")], key=tie_break.key)
    assert [material.material_id for material in ordered] == ["B", "A", "C", "Z"]


def test_rank_skips_maintenance_and_orders_by_id():
    candidates = [_material("C"), _material("A"), _material("B")]
    records = [_empty("C"), _empty("A"), _empty("B", status=SlotStatus.MAINTENANCE)]

    ranked = rank_materials(candidates, records, T0, T1, LexicographicTieBreak())

    assert [material.material_id for material in ranked] == ["A", "C"]


def _build_selector(tmp_path, filename: str, **overrides):
    settings = _build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_demo_materials()
    store = AvailabilityStore(repository, settings=settings)
    service = AllocationService(repository=repository, store=store, settings=settings)
    selector = MaterialSelector(store, repository=repository, settings=settings)
    return service, selector


def test_fullest_material_ranked_first(tmp_path):
    service, selector = _build_selector(tmp_path, "fullest.db")
    service.reserve("EARLIER", ["DGL-HEADDRESS-CAR-001"], T0 - timedelta(days=60), T0 - timedelta(days=30))

    ranked = selector.select_for_filters("HEADDRESS", "CAR", "DIGITAL", T0, T1)

    assert [material.material_id for material in ranked] == [
        "DGL-HEADDRESS-CAR-001",
        "DGL-HEADDRESS-CAR-002",
        "DGL-HEADDRESS-CAR-003",
    ]


def test_configured_priority_breaks_ties(tmp_path):
    _, selector = _build_selector(tmp_path, "priority.db")

    ranked = selector.select_for_filters("HEADDRESS", "CAR", "DIGITAL", T0, T1)

    assert [material.material_id for material in ranked] == [
        "DGL-HEADDRESS-CAR-002",
        "DGL-HEADDRESS-CAR-003",
        "DGL-HEADDRESS-CAR-001",
    ]


def test_lexicographic_when_no_priority_configured(tmp_path):
    _, selector = _build_selector(tmp_path, "lexical.db", selection_priority_order=())

    ranked = selector.select_for_filters("HEADDRESS", "CAR", "DIGITAL", T0, T1, limit=2)

    assert [material.material_id for material in ranked] == [
        "DGL-HEADDRESS-CAR-001",
        "DGL-HEADDRESS-CAR-002",
    ]


def test_conflicting_material_is_excluded(tmp_path):
    service, selector = _build_selector(tmp_path, "conflict.db")
    service.reserve("BUSY", ["DGL-HEADDRESS-CAR-002"], T0, T1)

    ranked = selector.select_for_filters("HEADDRESS", "CAR", "DIGITAL", T0 + timedelta(days=1), T1)

    assert "DGL-HEADDRESS-CAR-002" not in [material.material_id for material in ranked]


def test_selection_is_deterministic_and_deduplicated(tmp_path):
    _, selector = _build_selector(tmp_path, "deterministic.db")
    candidates = [
        _material("DGL-HEADDRESS-CAR-003"),
        _material("DGL-HEADDRESS-CAR-001"),
        _material("DGL-HEADDRESS-CAR-003"),
        _material("DGL-HEADDRESS-CAR-002"),
    ]

    first = selector.select_materials(candidates, T0, T1)
    second = selector.select_materials(list(reversed(candidates)), T0, T1)

    assert first == second
    assert len(first) == 3
