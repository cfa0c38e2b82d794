"""Versioned persistence for per-material availability records.

Every write is conditional on the version read at load time, so two callers
racing for the last slot on a material cannot both commit. There is no raw
setter: mutations go through ``compare_and_apply`` only.
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterator, Optional, Sequence

from fleetslot.domain.conflicts import verify_invariants
from fleetslot.domain.errors import ConcurrentModificationError
from fleetslot.domain.models import AvailabilityRecord, PendingEntry, Reservation, SlotStatus
from fleetslot.repository.data_repository import DataRepository
from fleetslot.utils.clock import from_storage, to_storage, utc_now
from fleetslot.utils.config import Settings
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)

MutateFn = Callable[[AvailabilityRecord], Optional[AvailabilityRecord]]


class AvailabilityStore:
    """Optimistic-concurrency boundary around the MaterialAvailability tables."""

    def __init__(
        self,
        repository: DataRepository,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._settings = settings or repository.settings
        self._clock = clock

    def default_record(self, material_id: str) -> AvailabilityRecord:
        return AvailabilityRecord(
            material_id=material_id,
            total_slots=self._settings.default_total_slots,
            reservations=(),
            status=SlotStatus.AVAILABLE,
            version=0,
            updated_at=self._clock(),
        )

    @contextmanager
    def _snapshot(self) -> Iterator[sqlite3.Connection]:
        """Connection whose reads all see the same committed state."""
        with self._repository.connect() as conn:
            conn.execute("BEGIN;")
            yield conn

    def get(self, material_id: str) -> AvailabilityRecord:
        """Return the record, creating the default one on first access."""
        self._ensure_record(material_id)
        with self._snapshot() as conn:
            record = self._load(conn, material_id)
        if record is None:  # pragma: no cover - row created above
            raise RuntimeError(f"Availability record for {material_id} vanished")
        return record

    def has_record(self, material_id: str) -> bool:
        with self._repository.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT 1 FROM MaterialAvailability WHERE material_id = ?;",
                (material_id,),
            )
            return cursor.fetchone() is not None

    def list_by_ids(self, material_ids: Sequence[str]) -> list[AvailabilityRecord]:
        """Batch read in request order.

        Materials never referenced by an allocation come back as unpersisted
        default records; reads do not create rows.
        """
        records: list[AvailabilityRecord] = []
        with self._snapshot() as conn:
            for material_id in material_ids:
                record = self._load(conn, material_id)
                records.append(record if record is not None else self.default_record(material_id))
        return records

    def list_all(self) -> list[AvailabilityRecord]:
        with self._snapshot() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT material_id FROM MaterialAvailability ORDER BY material_id ASC;")
            material_ids = [str(row["material_id"]) for row in cursor.fetchall()]
            records = [self._load(conn, material_id) for material_id in material_ids]
        return [record for record in records if record is not None]

    def find_materials_holding(self, campaign_id: str) -> list[str]:
        with self._repository.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT material_id
                FROM Reservations
                WHERE campaign_id = ?
                ORDER BY material_id ASC;
                """,
                (campaign_id,),
            )
            return [str(row["material_id"]) for row in cursor.fetchall()]

    def list_campaign_windows(self, campaign_id: str) -> set[tuple[datetime, datetime]]:
        """Distinct ``(start, end)`` windows the campaign currently holds."""
        with self._repository.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT DISTINCT start_time, end_time
                FROM Reservations
                WHERE campaign_id = ?;
                """,
                (campaign_id,),
            )
            return {
                (from_storage(str(row["start_time"])), from_storage(str(row["end_time"])))
                for row in cursor.fetchall()
            }

    def list_expired_reservations(self, now: datetime) -> list[tuple[str, Reservation]]:
        """Return ``(material_id, reservation)`` pairs whose end time has passed."""
        with self._repository.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT material_id, campaign_id, slot_number, start_time, end_time
                FROM Reservations
                WHERE end_time <= ?
                ORDER BY campaign_id ASC, material_id ASC;
                """,
                (to_storage(now),),
            )
            return [
                (str(row["material_id"]), _row_to_reservation(row))
                for row in cursor.fetchall()
            ]

    def compare_and_apply(self, material_id: str, mutate_fn: MutateFn) -> AvailabilityRecord:
        """Load, mutate and conditionally write one record.

        ``mutate_fn`` returns the new record, ``None`` for no change, or raises
        an ``AllocationError`` which propagates without retry. A lost race
        reruns the whole cycle against a fresh load.
        """
        self._ensure_record(material_id)
        max_attempts = self._settings.cas_max_attempts
        for attempt in range(1, max_attempts + 1):
            with self._snapshot() as conn:
                current = self._load(conn, material_id)
            if current is None:  # pragma: no cover - row created above
                raise RuntimeError(f"Availability record for {material_id} vanished")

            updated = mutate_fn(current)
            if updated is None:
                return current

            verify_invariants(updated)
            if self._write_if_unchanged(current.version, updated):
                return replace(updated, version=current.version + 1)

            logger.debug(
                "Version conflict | material_id=%s | attempt=%s/%s | version=%s",
                material_id,
                attempt,
                max_attempts,
                current.version,
            )
            if attempt < max_attempts and self._settings.cas_retry_backoff_seconds > 0:
                time.sleep(self._settings.cas_retry_backoff_seconds * attempt)

        logger.warning(
            "Optimistic write retries exhausted | material_id=%s | attempts=%s",
            material_id,
            max_attempts,
        )
        raise ConcurrentModificationError(
            f"Material {material_id} kept changing; gave up after {max_attempts} attempts",
            material_id=material_id,
        )

    def _ensure_record(self, material_id: str) -> None:
        now = self._clock()
        total = self._settings.default_total_slots
        with self._repository.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO MaterialAvailability (
                    material_id,
                    total_slots,
                    occupied_slots,
                    available_slots,
                    status,
                    version,
                    updated_at
                )
                VALUES (?, ?, 0, ?, 'AVAILABLE', 0, ?);
                """,
                (material_id, total, total, to_storage(now)),
            )
            conn.commit()
            if cursor.rowcount > 0:
                logger.info(
                    "Availability record created | material_id=%s | total_slots=%s",
                    material_id,
                    total,
                )

    def _write_if_unchanged(self, expected_version: int, record: AvailabilityRecord) -> bool:
        with self._repository.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE MaterialAvailability
                SET total_slots = ?,
                    occupied_slots = ?,
                    available_slots = ?,
                    status = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE material_id = ? AND version = ?;
                """,
                (
                    record.total_slots,
                    record.occupied_slots,
                    record.available_slots,
                    record.status.value,
                    to_storage(record.updated_at),
                    record.material_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return False

            cursor.execute(
                "DELETE FROM Reservations WHERE material_id = ?;",
                (record.material_id,),
            )
            cursor.executemany(
                """
                INSERT INTO Reservations (
                    material_id,
                    campaign_id,
                    slot_number,
                    start_time,
                    end_time
                )
                VALUES (?, ?, ?, ?, ?);
                """,
                [
                    (
                        record.material_id,
                        reservation.campaign_id,
                        reservation.slot_number,
                        to_storage(reservation.start_time),
                        to_storage(reservation.end_time),
                    )
                    for reservation in record.reservations
                ],
            )
            cursor.execute(
                "DELETE FROM PendingQueue WHERE material_id = ?;",
                (record.material_id,),
            )
            cursor.executemany(
                """
                INSERT INTO PendingQueue (
                    material_id,
                    campaign_id,
                    requested_start_time,
                    priority,
                    queued_at,
                    position
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        record.material_id,
                        entry.campaign_id,
                        to_storage(entry.requested_start_time),
                        entry.priority,
                        to_storage(entry.queued_at),
                        position,
                    )
                    for position, entry in enumerate(record.pending)
                ],
            )
            conn.commit()
        return True

    def _load(self, conn: sqlite3.Connection, material_id: str) -> Optional[AvailabilityRecord]:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT material_id, total_slots, occupied_slots, status, version, updated_at
            FROM MaterialAvailability
            WHERE material_id = ?;
            """,
            (material_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None

        cursor.execute(
            """
            SELECT material_id, campaign_id, slot_number, start_time, end_time
            FROM Reservations
            WHERE material_id = ?
            ORDER BY start_time ASC, slot_number ASC;
            """,
            (material_id,),
        )
        reservations = tuple(_row_to_reservation(item) for item in cursor.fetchall())

        cursor.execute(
            """
            SELECT campaign_id, requested_start_time, priority, queued_at
            FROM PendingQueue
            WHERE material_id = ?
            ORDER BY position ASC;
            """,
            (material_id,),
        )
        pending = tuple(
            PendingEntry(
                campaign_id=str(item["campaign_id"]),
                requested_start_time=from_storage(str(item["requested_start_time"])),
                priority=int(item["priority"]),
                queued_at=from_storage(str(item["queued_at"])),
            )
            for item in cursor.fetchall()
        )

        stored_occupied = int(row["occupied_slots"])
        if stored_occupied != len(reservations):
            logger.warning(
                "Stored slot count drifted | material_id=%s | stored=%s | actual=%s",
                material_id,
                stored_occupied,
                len(reservations),
            )

        return AvailabilityRecord(
            material_id=str(row["material_id"]),
            total_slots=int(row["total_slots"]),
            reservations=reservations,
            status=SlotStatus(str(row["status"])),
            version=int(row["version"]),
            updated_at=from_storage(str(row["updated_at"])),
            pending=pending,
        )


def _row_to_reservation(row: sqlite3.Row) -> Reservation:
    return Reservation(
        campaign_id=str(row["campaign_id"]),
        slot_number=int(row["slot_number"]),
        start_time=from_storage(str(row["start_time"])),
        end_time=from_storage(str(row["end_time"])),
    )
