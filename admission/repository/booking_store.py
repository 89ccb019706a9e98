"""Durable store for booking requests and their lifecycle state."""

from __future__ import annotations

import sqlite3
from datetime import date, datetime
from typing import Any, Optional

from admission.domain.models import BookingRequest, BookingStatus, BookingType
from admission.repository.data_repository import DataRepository
from admission.utils.timeutils import parse_date, parse_datetime, to_iso, utc_now


_SELECT_COLUMNS = """
    id, booking_type, accommodation_id, program_id, requester_id, check_in,
    check_out, number_of_guests, status, created_at, decided_at, decided_by,
    admin_notes, payment_due_at, confirmed_at, overdue_at, released_at, released_by
"""

_UPDATABLE_FIELDS = frozenset(
    {
        "decided_at",
        "decided_by",
        "admin_notes",
        "payment_due_at",
        "confirmed_at",
        "overdue_at",
        "released_at",
        "released_by",
    }
)


class BookingRequestStore:
    """Row-level access to BookingRequests.

    Writes take the caller's transaction connection; the admission service is
    the only caller allowed to mutate status.
    """

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    def insert(
        self,
        conn: sqlite3.Connection,
        *,
        booking_type: BookingType,
        requester_id: str,
        accommodation_id: Optional[int] = None,
        program_id: Optional[int] = None,
        check_in: Optional[date] = None,
        check_out: Optional[date] = None,
        number_of_guests: int = 1,
    ) -> BookingRequest:
        cursor = conn.execute(
            """
            INSERT INTO BookingRequests (
                booking_type, accommodation_id, program_id, requester_id,
                check_in, check_out, number_of_guests, status, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                booking_type.value,
                accommodation_id,
                program_id,
                requester_id,
                check_in.isoformat() if check_in is not None else None,
                check_out.isoformat() if check_out is not None else None,
                number_of_guests,
                BookingStatus.PENDING.value,
                to_iso(utc_now()),
            ),
        )
        created = self.get(int(cursor.lastrowid), conn=conn)
        if created is None:
            raise RuntimeError(f"Inserted booking request {cursor.lastrowid} could not be read back")
        return created

    def get(
        self,
        request_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[BookingRequest]:
        with self._repository.reader(conn) as connection:
            row = connection.execute(
                f"SELECT {_SELECT_COLUMNS} FROM BookingRequests WHERE id = ?;",
                (request_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_request(row)

    def update_status(
        self,
        conn: sqlite3.Connection,
        request_id: int,
        expected_status: BookingStatus,
        new_status: BookingStatus,
        **fields: Any,
    ) -> bool:
        """Flip status only if the row still carries `expected_status`.

        Returns False when another transaction moved the row first.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported booking fields: {sorted(unknown)}")

        assignments = ["status = ?"]
        params: list[Any] = [new_status.value]
        for name in sorted(fields):
            value = fields[name]
            assignments.append(f"{name} = ?")
            params.append(to_iso(value) if isinstance(value, datetime) else value)
        params.extend([request_id, expected_status.value])

        cursor = conn.execute(
            f"""
            UPDATE BookingRequests
            SET {", ".join(assignments)}
            WHERE id = ? AND status = ?;
            """,
            tuple(params),
        )
        return cursor.rowcount == 1

    def has_active_request(
        self,
        conn: sqlite3.Connection,
        requester_id: str,
        *,
        accommodation_id: Optional[int] = None,
        program_id: Optional[int] = None,
    ) -> bool:
        """True when the requester already holds a pending or slot-holding request."""
        if accommodation_id is not None:
            target_column, target_id = "accommodation_id", accommodation_id
        elif program_id is not None:
            target_column, target_id = "program_id", program_id
        else:
            raise ValueError("accommodation_id or program_id is required")
        row = conn.execute(
            f"""
            SELECT 1
            FROM BookingRequests
            WHERE requester_id = ?
              AND {target_column} = ?
              AND status IN (?, ?, ?, ?)
            LIMIT 1;
            """,
            (
                requester_id,
                target_id,
                BookingStatus.PENDING.value,
                BookingStatus.APPROVED.value,
                BookingStatus.CONFIRMED.value,
                BookingStatus.OVERDUE.value,
            ),
        ).fetchone()
        return row is not None

    def list_for_requester(
        self,
        requester_id: str,
        *,
        status: Optional[BookingStatus] = None,
        booking_type: Optional[BookingType] = None,
        limit: int,
        offset: int = 0,
    ) -> tuple[list[BookingRequest], int]:
        """Return one page of the requester's bookings, newest first, and the total."""
        return self.list_page(
            requester_id=requester_id,
            status=status,
            booking_type=booking_type,
            limit=limit,
            offset=offset,
        )

    def list_page(
        self,
        *,
        requester_id: Optional[str] = None,
        status: Optional[BookingStatus] = None,
        booking_type: Optional[BookingType] = None,
        limit: int,
        offset: int = 0,
    ) -> tuple[list[BookingRequest], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if requester_id is not None:
            clauses.append("requester_id = ?")
            params.append(requester_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if booking_type is not None:
            clauses.append("booking_type = ?")
            params.append(booking_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._repository.reader() as connection:
            total = int(
                connection.execute(
                    f"SELECT COUNT(*) AS count FROM BookingRequests {where};",
                    tuple(params),
                ).fetchone()["count"]
            )
            rows = connection.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM BookingRequests
                {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?;
                """,
                (*params, limit, offset),
            ).fetchall()
        return [_row_to_request(row) for row in rows], total

    def list_pending(self, accommodation_id: Optional[int] = None) -> list[BookingRequest]:
        """Pending requests in arrival order, optionally for one accommodation."""
        if accommodation_id is None:
            query = f"""
                SELECT {_SELECT_COLUMNS}
                FROM BookingRequests
                WHERE status = ?
                ORDER BY created_at ASC, id ASC;
            """
            params: tuple[Any, ...] = (BookingStatus.PENDING.value,)
        else:
            query = f"""
                SELECT {_SELECT_COLUMNS}
                FROM BookingRequests
                WHERE status = ? AND accommodation_id = ?
                ORDER BY created_at ASC, id ASC;
            """
            params = (BookingStatus.PENDING.value, accommodation_id)
        with self._repository.reader() as connection:
            rows = connection.execute(query, params).fetchall()
        return [_row_to_request(row) for row in rows]

    def list_overdue_candidates(self, now: datetime) -> list[int]:
        """Ids of approved requests whose payment deadline has elapsed."""
        with self._repository.reader() as connection:
            rows = connection.execute(
                """
                SELECT id
                FROM BookingRequests
                WHERE status = ?
                  AND payment_due_at IS NOT NULL
                  AND payment_due_at <= ?
                ORDER BY payment_due_at ASC, id ASC;
                """,
                (BookingStatus.APPROVED.value, to_iso(now)),
            ).fetchall()
        return [int(row["id"]) for row in rows]

    def list_overdue(self, now: datetime) -> list[BookingRequest]:
        """Slot-holding bookings past their payment deadline, most overdue first.

        Approved rows the sweep has not reached yet are included.
        """
        with self._repository.reader() as connection:
            rows = connection.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM BookingRequests
                WHERE status IN (?, ?)
                  AND payment_due_at IS NOT NULL
                  AND payment_due_at < ?
                ORDER BY payment_due_at ASC, id ASC;
                """,
                (BookingStatus.APPROVED.value, BookingStatus.OVERDUE.value, to_iso(now)),
            ).fetchall()
        return [_row_to_request(row) for row in rows]

    def count_by_status(
        self,
        accommodation_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> dict[BookingStatus, int]:
        """Booking counts per status, for one accommodation or across all bookings."""
        where = ""
        params: tuple[Any, ...] = ()
        if accommodation_id is not None:
            where = "WHERE accommodation_id = ?"
            params = (accommodation_id,)
        with self._repository.reader(conn) as connection:
            rows = connection.execute(
                f"""
                SELECT status, COUNT(*) AS count
                FROM BookingRequests
                {where}
                GROUP BY status;
                """,
                params,
            ).fetchall()
        counts = {status: 0 for status in BookingStatus}
        for row in rows:
            counts[BookingStatus(row["status"])] = int(row["count"])
        return counts


def _row_to_request(row: sqlite3.Row) -> BookingRequest:
    return BookingRequest(
        request_id=int(row["id"]),
        booking_type=BookingType(row["booking_type"]),
        accommodation_id=_optional_int(row["accommodation_id"]),
        program_id=_optional_int(row["program_id"]),
        requester_id=str(row["requester_id"]),
        check_in=parse_date(row["check_in"]),
        check_out=parse_date(row["check_out"]),
        number_of_guests=int(row["number_of_guests"]),
        status=BookingStatus(row["status"]),
        created_at=parse_datetime(row["created_at"]),
        decided_at=parse_datetime(row["decided_at"]),
        decided_by=row["decided_by"],
        admin_notes=row["admin_notes"],
        payment_due_at=parse_datetime(row["payment_due_at"]),
        confirmed_at=parse_datetime(row["confirmed_at"]),
        overdue_at=parse_datetime(row["overdue_at"]),
        released_at=parse_datetime(row["released_at"]),
        released_by=row["released_by"],
    )


def _optional_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None
