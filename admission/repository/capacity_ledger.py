"""Authoritative per-accommodation capacity counters."""

from __future__ import annotations

import sqlite3
from typing import Optional

from admission.domain.models import BookingStatus, LedgerCounts, SLOT_HOLDING_STATUSES
from admission.repository.data_repository import DataRepository
from admission.utils.logger import get_logger
from admission.utils.timeutils import parse_datetime, to_iso, utc_now


logger = get_logger(__name__)

LEDGER_FIELDS = frozenset({"approved_count", "pending_count", "total_count"})


class LedgerRowMissingError(RuntimeError):
    """Raised when an accommodation has no ledger row to update."""


class CapacityLedger:
    """Counter rows that are only ever changed inside an admission transaction.

    The counters can always be rebuilt by replaying BookingRequests, which is
    how drift is repaired.
    """

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    def get(
        self,
        accommodation_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[LedgerCounts]:
        with self._repository.reader(conn) as connection:
            row = connection.execute(
                """
                SELECT accommodation_id, approved_count, pending_count, total_count, updated_at
                FROM CapacityLedger
                WHERE accommodation_id = ?;
                """,
                (accommodation_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_counts(row)

    def list_all(self) -> list[LedgerCounts]:
        with self._repository.reader() as connection:
            rows = connection.execute(
                """
                SELECT accommodation_id, approved_count, pending_count, total_count, updated_at
                FROM CapacityLedger
                ORDER BY accommodation_id ASC;
                """
            ).fetchall()
        return [_row_to_counts(row) for row in rows]

    def apply_delta(
        self,
        conn: sqlite3.Connection,
        accommodation_id: int,
        field: str,
        delta: int,
    ) -> None:
        if not self.try_apply_delta(conn, accommodation_id, field, delta):
            raise LedgerRowMissingError(
                f"Ledger update {field}{delta:+d} refused for accommodation {accommodation_id}"
            )

    def try_apply_delta(
        self,
        conn: sqlite3.Connection,
        accommodation_id: int,
        field: str,
        delta: int,
    ) -> bool:
        """Apply `delta` unless the row is missing or the counter would go negative."""
        if field not in LEDGER_FIELDS:
            raise ValueError(f"Unknown ledger field: {field}")
        if delta == 0:
            return True
        cursor = conn.execute(
            f"""
            UPDATE CapacityLedger
            SET {field} = {field} + ?, updated_at = ?
            WHERE accommodation_id = ? AND {field} + ? >= 0;
            """,
            (delta, to_iso(utc_now()), accommodation_id, delta),
        )
        return cursor.rowcount == 1

    def try_reserve_slot(
        self,
        conn: sqlite3.Connection,
        accommodation_id: int,
        *,
        force: bool = False,
    ) -> bool:
        """Move one pending request into the approved bucket if a slot is free.

        The capacity check and the increment are a single conditional UPDATE
        against the ledger row, so a second approver always sees the first
        one's increment.
        """
        capacity_clause = (
            ""
            if force
            else "AND approved_count + 1 <= (SELECT max_bookings FROM Accommodations WHERE id = accommodation_id)"
        )
        cursor = conn.execute(
            f"""
            UPDATE CapacityLedger
            SET approved_count = approved_count + 1,
                pending_count = pending_count - 1,
                updated_at = ?
            WHERE accommodation_id = ?
              AND pending_count >= 1
              {capacity_clause};
            """,
            (to_iso(utc_now()), accommodation_id),
        )
        return cursor.rowcount == 1

    def recount(self, conn: sqlite3.Connection, accommodation_id: int) -> LedgerCounts:
        """Rebuild counters for one accommodation from its booking rows."""
        holding = tuple(status.value for status in SLOT_HOLDING_STATUSES)
        row = conn.execute(
            f"""
            SELECT
                COALESCE(SUM(CASE WHEN status IN ({", ".join("?" for _ in holding)}) THEN 1 ELSE 0 END), 0)
                    AS approved_count,
                COALESCE(SUM(CASE WHEN status = ? THEN 1 ELSE 0 END), 0) AS pending_count,
                COUNT(*) AS total_count
            FROM BookingRequests
            WHERE accommodation_id = ?;
            """,
            (*holding, BookingStatus.PENDING.value, accommodation_id),
        ).fetchone()
        return LedgerCounts(
            accommodation_id=accommodation_id,
            approved_count=int(row["approved_count"]),
            pending_count=int(row["pending_count"]),
            total_count=int(row["total_count"]),
        )

    def overwrite(self, conn: sqlite3.Connection, counts: LedgerCounts) -> None:
        conn.execute(
            """
            INSERT INTO CapacityLedger (
                accommodation_id, approved_count, pending_count, total_count, updated_at
            )
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(accommodation_id) DO UPDATE SET
                approved_count = excluded.approved_count,
                pending_count = excluded.pending_count,
                total_count = excluded.total_count,
                updated_at = excluded.updated_at;
            """,
            (
                counts.accommodation_id,
                counts.approved_count,
                counts.pending_count,
                counts.total_count,
                to_iso(utc_now()),
            ),
        )

    def recompute(self, accommodation_id: int) -> LedgerCounts:
        """Replace stored counters with the recount in one transaction."""
        with self._repository.transaction() as conn:
            counts = self.recount(conn, accommodation_id)
            self.overwrite(conn, counts)
        logger.info(
            "Ledger recomputed for accommodation %s: approved=%s pending=%s total=%s",
            accommodation_id,
            counts.approved_count,
            counts.pending_count,
            counts.total_count,
        )
        return counts


def _row_to_counts(row: sqlite3.Row) -> LedgerCounts:
    return LedgerCounts(
        accommodation_id=int(row["accommodation_id"]),
        approved_count=int(row["approved_count"]),
        pending_count=int(row["pending_count"]),
        total_count=int(row["total_count"]),
        updated_at=parse_datetime(row["updated_at"]),
    )
