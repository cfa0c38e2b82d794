"""Material ranking used to decide assignment order for multi-material campaigns."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from fleetslot.domain.conflicts import can_accept
from fleetslot.domain.models import AvailabilityRecord, Material
from fleetslot.repository.availability_store import AvailabilityStore
from fleetslot.repository.data_repository import DataRepository
from fleetslot.utils.clock import ensure_utc
from fleetslot.utils.config import Settings, get_settings
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)


class TieBreak(Protocol):
    def key(self, material: Material) -> tuple: ...


class LexicographicTieBreak:
    """Order equally-loaded materials by material id."""

    def key(self, material: Material) -> tuple:
        return (material.material_id,)


class PriorityTieBreak:
    """Order equally-loaded materials by a configured ranking.

    Ids missing from the ranking sort after every ranked id, then by id.
    """

    def __init__(self, ranked_ids: Sequence[str]) -> None:
        self._rank = {material_id: index for index, material_id in enumerate(ranked_ids)}

    def key(self, material: Material) -> tuple:
        rank = self._rank.get(material.material_id, len(self._rank))
        return (rank, material.material_id)


def tie_break_from_settings(settings: Settings) -> TieBreak:
    if settings.selection_priority_order:
        return PriorityTieBreak(settings.selection_priority_order)
    return LexicographicTieBreak()


def rank_materials(
    candidates: Sequence[Material],
    records: Sequence[AvailabilityRecord],
    start: datetime,
    end: datetime,
    tie_break: TieBreak,
) -> list[Material]:
    """Drop materials that cannot take the window, fullest first.

    ``records`` must line up with ``candidates`` index for index. Packing
    campaigns onto the fullest materials leaves whole materials free for
    later multi-slot requests.
    """
    eligible: list[tuple[Material, AvailabilityRecord]] = [
        (material, record)
        for material, record in zip(candidates, records)
        if record.available_slots > 0 and can_accept(record, start, end)
    ]
    eligible.sort(key=lambda pair: (-pair[1].occupied_slots,) + tie_break.key(pair[0]))
    return [material for material, _ in eligible]


class MaterialSelector:
    """Advisory ranking; reservations re-validate at write time."""

    def __init__(
        self,
        store: AvailabilityStore,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        tie_break: Optional[TieBreak] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._repository = repository
        self._tie_break = tie_break or tie_break_from_settings(self._settings)

    def select_materials(
        self,
        candidates: Sequence[Material],
        start: datetime,
        end: datetime,
    ) -> list[Material]:
        unique: dict[str, Material] = {}
        for material in candidates:
            unique.setdefault(material.material_id, material)
        pool = list(unique.values())
        if not pool:
            return []

        records = self._store.list_by_ids([material.material_id for material in pool])
        ranked = rank_materials(
            pool,
            records,
            ensure_utc(start),
            ensure_utc(end),
            self._tie_break,
        )

        occupied_by_id = {record.material_id: record for record in records}
        for index, material in enumerate(ranked, start=1):
            record = occupied_by_id[material.material_id]
            logger.debug(
                "Ranked material | position=%s | material_id=%s | occupied=%s/%s",
                index,
                material.material_id,
                record.occupied_slots,
                record.total_slots,
            )
        logger.info(
            "Material selection completed | candidates=%s | eligible=%s",
            len(pool),
            len(ranked),
        )
        return ranked

    def select_for_filters(
        self,
        material_type: str,
        vehicle_type: str,
        category: str,
        start: datetime,
        end: datetime,
        limit: Optional[int] = None,
    ) -> list[Material]:
        """Resolve the candidate pool from the registry, then rank it."""
        if self._repository is None:
            raise RuntimeError("MaterialSelector needs a repository to resolve filters")
        candidates = self._repository.list_materials(
            material_type=material_type,
            vehicle_type=vehicle_type,
            category=category,
        )
        ranked = self.select_materials(candidates, start, end)
        if limit is not None:
            return ranked[:limit]
        return ranked
