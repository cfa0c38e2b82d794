"""Repository layer responsible for schema, material registry and campaign access."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from fleetslot.domain.models import Campaign, CampaignStatus, Material, PaymentStatus
from fleetslot.utils.clock import from_storage, to_storage, utc_now
from fleetslot.utils.config import Settings, get_settings
from fleetslot.utils.logger import get_logger


logger = get_logger(__name__)


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    @property
    def settings(self) -> Settings:
        return self._settings

    def connect(self) -> sqlite3.Connection:
        """Open a connection; shared by the availability store."""
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_busy_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self.connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Materials (
                        material_id TEXT PRIMARY KEY,
                        material_type TEXT NOT NULL,
                        vehicle_type TEXT NOT NULL,
                        category TEXT NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Campaigns (
                        campaign_id TEXT PRIMARY KEY,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        payment_status TEXT NOT NULL DEFAULT 'PENDING',
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        material_ids TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        reason_for_reject TEXT,
                        CHECK (start_time < end_time)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS MaterialAvailability (
                        material_id TEXT PRIMARY KEY,
                        total_slots INTEGER NOT NULL CHECK (total_slots > 0),
                        occupied_slots INTEGER NOT NULL DEFAULT 0 CHECK (occupied_slots >= 0),
                        available_slots INTEGER NOT NULL CHECK (available_slots >= 0),
                        status TEXT NOT NULL DEFAULT 'AVAILABLE'
                            CHECK (status IN ('AVAILABLE', 'FULL', 'MAINTENANCE')),
                        version INTEGER NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL,
                        CHECK (occupied_slots + available_slots = total_slots)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Reservations (
                        material_id TEXT NOT NULL,
                        campaign_id TEXT NOT NULL,
                        slot_number INTEGER NOT NULL CHECK (slot_number >= 1),
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        PRIMARY KEY (material_id, campaign_id),
                        UNIQUE (material_id, slot_number),
                        CHECK (start_time < end_time),
                        FOREIGN KEY (material_id) REFERENCES MaterialAvailability(material_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS PendingQueue (
                        material_id TEXT NOT NULL,
                        campaign_id TEXT NOT NULL,
                        requested_start_time TEXT NOT NULL,
                        priority INTEGER NOT NULL DEFAULT 0
                            CHECK (priority BETWEEN 0 AND 10),
                        queued_at TEXT NOT NULL,
                        position INTEGER NOT NULL,
                        PRIMARY KEY (material_id, campaign_id),
                        FOREIGN KEY (material_id) REFERENCES MaterialAvailability(material_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ReleaseBacklog (
                        campaign_id TEXT NOT NULL,
                        material_id TEXT NOT NULL,
                        reason TEXT NOT NULL,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        queued_at TEXT NOT NULL,
                        PRIMARY KEY (campaign_id, material_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_reservations_end_time
                    ON Reservations(end_time);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_reservations_campaign
                    ON Reservations(campaign_id);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_campaigns_payment_status
                    ON Campaigns(payment_status, status, created_at);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_materials_filters
                    ON Materials(material_type, vehicle_type, category);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_materials(self) -> int:
        """Register the demo fleet only when the registry is empty."""
        try:
            with self.connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Materials;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Materials already registered; skipping demo seed")
                    return 0
                cursor.executemany(
                    """
                    INSERT INTO Materials (material_id, material_type, vehicle_type, category)
                    VALUES (?, ?, ?, ?);
                    """,
                    list(self._settings.demo_materials),
                )
                conn.commit()
            logger.info(
                "Demo material seed completed with %s materials",
                len(self._settings.demo_materials),
            )
            return len(self._settings.demo_materials)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo material seeding failed: {exc}") from exc

    # --- Material registry ---

    def upsert_material(self, material: Material) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO Materials (material_id, material_type, vehicle_type, category)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(material_id) DO UPDATE SET
                    material_type = excluded.material_type,
                    vehicle_type = excluded.vehicle_type,
                    category = excluded.category;
                """,
                (
                    material.material_id,
                    material.material_type,
                    material.vehicle_type,
                    material.category,
                ),
            )
            conn.commit()

    def get_material(self, material_id: str) -> Optional[Material]:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT material_id, material_type, vehicle_type, category
                FROM Materials
                WHERE material_id = ?;
                """,
                (material_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return _row_to_material(row)

    def list_materials(
        self,
        material_type: Optional[str] = None,
        vehicle_type: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Material]:
        """Return registered materials matching every filter that is set."""
        clauses: list[str] = []
        params: list[str] = []
        for column, value in (
            ("material_type", material_type),
            ("vehicle_type", vehicle_type),
            ("category", category),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT material_id, material_type, vehicle_type, category
                FROM Materials
                {where}
                ORDER BY material_id ASC;
                """,
                tuple(params),
            )
            return [_row_to_material(row) for row in cursor.fetchall()]

    def find_missing_material_ids(self, material_ids: Sequence[str]) -> list[str]:
        """Return the ids absent from the registry, preserving request order."""
        if not material_ids:
            return []
        placeholders = ",".join("?" for _ in material_ids)
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT material_id FROM Materials WHERE material_id IN ({placeholders});",
                tuple(material_ids),
            )
            known = {str(row["material_id"]) for row in cursor.fetchall()}
        return [material_id for material_id in material_ids if material_id not in known]

    # --- Campaign lifecycle ---

    def create_campaign(
        self,
        campaign_id: str,
        start_time: datetime,
        end_time: datetime,
        material_ids: Iterable[str] = (),
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        status: CampaignStatus = CampaignStatus.PENDING,
        created_at: Optional[datetime] = None,
    ) -> Campaign:
        created = created_at or utc_now()
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO Campaigns (
                    campaign_id,
                    start_time,
                    end_time,
                    payment_status,
                    status,
                    material_ids,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    campaign_id,
                    to_storage(start_time),
                    to_storage(end_time),
                    payment_status.value,
                    status.value,
                    json.dumps(list(material_ids)),
                    to_storage(created),
                    to_storage(created),
                ),
            )
            conn.commit()
        campaign = self.get_campaign(campaign_id)
        if campaign is None:  # pragma: no cover - insert just succeeded
            raise RuntimeError(f"Campaign {campaign_id} was not persisted")
        return campaign

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM Campaigns WHERE campaign_id = ?;",
                (campaign_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return _row_to_campaign(row)

    def set_campaign_materials(self, campaign_id: str, material_ids: Sequence[str]) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE Campaigns
                SET material_ids = ?, updated_at = ?
                WHERE campaign_id = ?;
                """,
                (json.dumps(list(material_ids)), to_storage(utc_now()), campaign_id),
            )
            conn.commit()

    def update_payment_status(self, campaign_id: str, payment_status: PaymentStatus) -> bool:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Campaigns
                SET payment_status = ?, updated_at = ?
                WHERE campaign_id = ?;
                """,
                (payment_status.value, to_storage(utc_now()), campaign_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def list_unpaid_campaigns(self, created_before: datetime) -> list[Campaign]:
        """Return pending-payment campaigns older than the cutoff, oldest first."""
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT *
                FROM Campaigns
                WHERE payment_status = 'PENDING'
                  AND status IN ('PENDING', 'APPROVED')
                  AND created_at < ?
                ORDER BY created_at ASC, campaign_id ASC;
                """,
                (to_storage(created_before),),
            )
            return [_row_to_campaign(row) for row in cursor.fetchall()]

    def mark_campaign_rejected(self, campaign_id: str, reason: str, now: datetime) -> bool:
        """Reject for non-payment; a campaign already rejected or ended is left alone."""
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Campaigns
                SET status = 'REJECTED',
                    payment_status = 'FAILED',
                    reason_for_reject = ?,
                    updated_at = ?
                WHERE campaign_id = ?
                  AND status NOT IN ('REJECTED', 'ENDED');
                """,
                (reason, to_storage(now), campaign_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def mark_campaign_ended(self, campaign_id: str, now: datetime) -> bool:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Campaigns
                SET status = 'ENDED', updated_at = ?
                WHERE campaign_id = ?
                  AND status NOT IN ('REJECTED', 'ENDED');
                """,
                (to_storage(now), campaign_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    # --- Release backlog ---

    def add_release_backlog(self, campaign_id: str, material_id: str, reason: str) -> None:
        """Queue a release that could not complete inline for the next sweep."""
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO ReleaseBacklog (campaign_id, material_id, reason, queued_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(campaign_id, material_id) DO UPDATE SET
                    reason = excluded.reason;
                """,
                (campaign_id, material_id, reason, to_storage(utc_now())),
            )
            conn.commit()

    def list_release_backlog(self) -> list[tuple[str, str]]:
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT campaign_id, material_id
                FROM ReleaseBacklog
                ORDER BY queued_at ASC, campaign_id ASC, material_id ASC;
                """
            )
            return [
                (str(row["campaign_id"]), str(row["material_id"]))
                for row in cursor.fetchall()
            ]

    def record_release_backlog_attempt(self, campaign_id: str, material_id: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                UPDATE ReleaseBacklog
                SET attempts = attempts + 1
                WHERE campaign_id = ? AND material_id = ?;
                """,
                (campaign_id, material_id),
            )
            conn.commit()

    def remove_release_backlog(self, campaign_id: str, material_id: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "DELETE FROM ReleaseBacklog WHERE campaign_id = ? AND material_id = ?;",
                (campaign_id, material_id),
            )
            conn.commit()


def _row_to_material(row: sqlite3.Row) -> Material:
    return Material(
        material_id=str(row["material_id"]),
        material_type=str(row["material_type"]),
        vehicle_type=str(row["vehicle_type"]),
        category=str(row["category"]),
    )


def _row_to_campaign(row: sqlite3.Row) -> Campaign:
    return Campaign(
        campaign_id=str(row["campaign_id"]),
        start_time=from_storage(str(row["start_time"])),
        end_time=from_storage(str(row["end_time"])),
        payment_status=PaymentStatus(str(row["payment_status"])),
        status=CampaignStatus(str(row["status"])),
        material_ids=tuple(json.loads(str(row["material_ids"]))),
        created_at=from_storage(str(row["created_at"])),
        reason_for_reject=(
            str(row["reason_for_reject"]) if row["reason_for_reject"] is not None else None
        ),
    )


def initialize_database() -> None:
    """Module-level initializer used by scripts."""
    DataRepository().initialize_database()
