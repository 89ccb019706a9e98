"""Repository layer responsible for connections, schema and the accommodation catalog."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from admission.domain.models import (
    Accommodation,
    AdminStatus,
    BookingStatus,
    GenderRestriction,
    PriceTerm,
    Program,
    ProgramModel,
)
from admission.utils.config import Settings, get_settings
from admission.utils.logger import get_logger
from admission.utils.timeutils import to_iso, utc_now


logger = get_logger(__name__)

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in BookingStatus)


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.sqlite_busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a unit of work holding SQLite's write lock from the first statement.

        Commits when the block exits normally and rolls back on any exception,
        so a failed operation leaves no partial state behind.
        """
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE;")
            yield connection
            connection.execute("COMMIT;")
        except BaseException:
            if connection.in_transaction:
                connection.execute("ROLLBACK;")
            raise
        finally:
            connection.close()

    @contextmanager
    def reader(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Reuse the caller's transaction connection, or open a short-lived one."""
        if conn is not None:
            yield conn
            return
        connection = self._connect()
        try:
            yield connection
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            connection = self._connect()
            try:
                connection.execute("PRAGMA journal_mode = WAL;")
                connection.executescript(
                    f"""
                    BEGIN;

                    CREATE TABLE IF NOT EXISTS Accommodations (
                        id INTEGER PRIMARY KEY,
                        title TEXT NOT NULL,
                        max_bookings INTEGER NOT NULL CHECK (max_bookings > 0),
                        guest_capacity INTEGER NOT NULL CHECK (guest_capacity > 0),
                        gender_restriction TEXT NOT NULL DEFAULT 'none',
                        price_term TEXT NOT NULL DEFAULT 'monthly',
                        price INTEGER NOT NULL DEFAULT 0 CHECK (price >= 0),
                        admin_status TEXT NOT NULL DEFAULT 'active',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS Programs (
                        id INTEGER PRIMARY KEY,
                        title TEXT NOT NULL,
                        program_model TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS BookingRequests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_type TEXT NOT NULL CHECK (booking_type IN ('accommodation', 'program')),
                        accommodation_id INTEGER,
                        program_id INTEGER,
                        requester_id TEXT NOT NULL,
                        check_in TEXT,
                        check_out TEXT,
                        number_of_guests INTEGER NOT NULL DEFAULT 1 CHECK (number_of_guests > 0),
                        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ({_STATUS_VALUES})),
                        created_at TEXT NOT NULL,
                        decided_at TEXT,
                        decided_by TEXT,
                        admin_notes TEXT,
                        payment_due_at TEXT,
                        confirmed_at TEXT,
                        overdue_at TEXT,
                        released_at TEXT,
                        released_by TEXT,
                        CHECK (
                            (booking_type = 'accommodation' AND accommodation_id IS NOT NULL)
                            OR (booking_type = 'program' AND program_id IS NOT NULL)
                        ),
                        FOREIGN KEY (accommodation_id) REFERENCES Accommodations(id),
                        FOREIGN KEY (program_id) REFERENCES Programs(id)
                    );

                    CREATE TABLE IF NOT EXISTS CapacityLedger (
                        accommodation_id INTEGER PRIMARY KEY,
                        approved_count INTEGER NOT NULL DEFAULT 0 CHECK (approved_count >= 0),
                        pending_count INTEGER NOT NULL DEFAULT 0 CHECK (pending_count >= 0),
                        total_count INTEGER NOT NULL DEFAULT 0 CHECK (total_count >= 0),
                        updated_at TEXT NOT NULL,
                        FOREIGN KEY (accommodation_id) REFERENCES Accommodations(id)
                    );

                    CREATE TABLE IF NOT EXISTS BookingTransitions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        request_id INTEGER NOT NULL,
                        from_status TEXT,
                        to_status TEXT NOT NULL,
                        actor_id TEXT,
                        occurred_at TEXT NOT NULL,
                        FOREIGN KEY (request_id) REFERENCES BookingRequests(id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_requests_accommodation_status
                    ON BookingRequests(accommodation_id, status);

                    CREATE INDEX IF NOT EXISTS idx_requests_requester_status
                    ON BookingRequests(requester_id, status);

                    CREATE INDEX IF NOT EXISTS idx_requests_status_due
                    ON BookingRequests(status, payment_due_at);

                    CREATE INDEX IF NOT EXISTS idx_transitions_request
                    ON BookingTransitions(request_id);

                    COMMIT;
                    """
                )
            finally:
                connection.close()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_sample_data(self) -> None:
        """Seed a small catalog only when the tables are empty."""
        try:
            with self.transaction() as conn:
                row = conn.execute("SELECT COUNT(*) AS count FROM Accommodations;").fetchone()
                if int(row["count"]) > 0:
                    logger.info("Catalog already present; skipping seed")
                    return

                accommodations = [
                    ("Ikeja Brothers Lodge", 20, 2, "brothers", "monthly", 45000),
                    ("Yaba Sisters Hostel", 12, 1, "sisters", "monthly", 38000),
                    ("Lekki Family Flat", 4, 6, "family", "yearly", 480000),
                    ("Surulere Shared Rooms", 30, 3, "none", "monthly", 25000),
                    ("Abuja Corps Lodge", 10, 2, "brothers", "yearly", 360000),
                ]
                for title, max_bookings, guests, gender, term, price in accommodations:
                    self._insert_accommodation(
                        conn,
                        accommodation_id=None,
                        title=title,
                        max_bookings=max_bookings,
                        guest_capacity=guests,
                        gender_restriction=GenderRestriction(gender),
                        price_term=PriceTerm(term),
                        price=price,
                        admin_status=AdminStatus.ACTIVE,
                    )

                now = to_iso(utc_now())
                conn.executemany(
                    """
                    INSERT INTO Programs (title, program_model, created_at)
                    VALUES (?, ?, ?);
                    """,
                    [
                        ("Weekend Tajweed Class", ProgramModel.QURAN_CLASS.value, now),
                        ("Monthly Community Lecture", ProgramModel.LECTURE.value, now),
                        ("Corps Members Welcome Event", ProgramModel.EVENT.value, now),
                    ],
                )
            logger.info("Sample catalog seeded with %s accommodations", len(accommodations))
        except sqlite3.Error as exc:
            raise RuntimeError(f"Sample data seeding failed: {exc}") from exc

    def _insert_accommodation(
        self,
        conn: sqlite3.Connection,
        *,
        accommodation_id: Optional[int],
        title: str,
        max_bookings: int,
        guest_capacity: int,
        gender_restriction: GenderRestriction,
        price_term: PriceTerm,
        price: int,
        admin_status: AdminStatus,
    ) -> int:
        now = to_iso(utc_now())
        cursor = conn.execute(
            """
            INSERT INTO Accommodations (
                id, title, max_bookings, guest_capacity, gender_restriction,
                price_term, price, admin_status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                accommodation_id,
                title,
                max_bookings,
                guest_capacity,
                gender_restriction.value,
                price_term.value,
                price,
                admin_status.value,
                now,
                now,
            ),
        )
        new_id = int(cursor.lastrowid)
        conn.execute(
            """
            INSERT OR IGNORE INTO CapacityLedger (accommodation_id, updated_at)
            VALUES (?, ?);
            """,
            (new_id, now),
        )
        return new_id

    def upsert_accommodation(
        self,
        *,
        accommodation_id: int,
        title: str,
        max_bookings: int,
        guest_capacity: int,
        gender_restriction: GenderRestriction = GenderRestriction.NONE,
        price_term: PriceTerm = PriceTerm.MONTHLY,
        price: int = 0,
        admin_status: AdminStatus = AdminStatus.ACTIVE,
    ) -> Accommodation:
        """Create or replace catalog fields; the ledger row is created alongside."""
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM Accommodations WHERE id = ?;",
                (accommodation_id,),
            ).fetchone()
            if existing is None:
                self._insert_accommodation(
                    conn,
                    accommodation_id=accommodation_id,
                    title=title,
                    max_bookings=max_bookings,
                    guest_capacity=guest_capacity,
                    gender_restriction=gender_restriction,
                    price_term=price_term,
                    price=price,
                    admin_status=admin_status,
                )
            else:
                conn.execute(
                    """
                    UPDATE Accommodations
                    SET title = ?, max_bookings = ?, guest_capacity = ?,
                        gender_restriction = ?, price_term = ?, price = ?,
                        admin_status = ?, updated_at = ?
                    WHERE id = ?;
                    """,
                    (
                        title,
                        max_bookings,
                        guest_capacity,
                        gender_restriction.value,
                        price_term.value,
                        price,
                        admin_status.value,
                        to_iso(utc_now()),
                        accommodation_id,
                    ),
                )
            accommodation = self.get_accommodation(accommodation_id, conn=conn)
        if accommodation is None:
            raise RuntimeError(f"Accommodation {accommodation_id} could not be read back after upsert")
        logger.info(
            "Accommodation %s upserted (max_bookings=%s, admin_status=%s)",
            accommodation.accommodation_id,
            accommodation.max_bookings,
            accommodation.admin_status.value,
        )
        return accommodation

    def get_accommodation(
        self,
        accommodation_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Accommodation]:
        with self.reader(conn) as connection:
            row = connection.execute(
                """
                SELECT id, title, max_bookings, guest_capacity, gender_restriction,
                       price_term, price, admin_status
                FROM Accommodations
                WHERE id = ?;
                """,
                (accommodation_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_accommodation(row)

    def list_accommodations(self) -> list[Accommodation]:
        with self.reader() as connection:
            rows = connection.execute(
                """
                SELECT id, title, max_bookings, guest_capacity, gender_restriction,
                       price_term, price, admin_status
                FROM Accommodations
                ORDER BY id ASC;
                """
            ).fetchall()
        return [_row_to_accommodation(row) for row in rows]

    def create_program(self, title: str, program_model: ProgramModel) -> Program:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO Programs (title, program_model, created_at)
                VALUES (?, ?, ?);
                """,
                (title, program_model.value, to_iso(utc_now())),
            )
            program_id = int(cursor.lastrowid)
        return Program(program_id=program_id, title=title, program_model=program_model)

    def get_program(
        self,
        program_id: int,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Program]:
        with self.reader(conn) as connection:
            row = connection.execute(
                "SELECT id, title, program_model FROM Programs WHERE id = ?;",
                (program_id,),
            ).fetchone()
        if row is None:
            return None
        return Program(
            program_id=int(row["id"]),
            title=str(row["title"]),
            program_model=ProgramModel(row["program_model"]),
        )

    def record_transition(
        self,
        conn: sqlite3.Connection,
        request_id: int,
        from_status: Optional[BookingStatus],
        to_status: BookingStatus,
        actor_id: Optional[str],
    ) -> None:
        """Append to the transition audit trail inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO BookingTransitions (request_id, from_status, to_status, actor_id, occurred_at)
            VALUES (?, ?, ?, ?, ?);
            """,
            (
                request_id,
                from_status.value if from_status is not None else None,
                to_status.value,
                actor_id,
                to_iso(utc_now()),
            ),
        )

    def list_transitions(self, request_id: int) -> list[tuple[Optional[str], str]]:
        with self.reader() as connection:
            rows = connection.execute(
                """
                SELECT from_status, to_status
                FROM BookingTransitions
                WHERE request_id = ?
                ORDER BY id ASC;
                """,
                (request_id,),
            ).fetchall()
        return [
            (
                str(row["from_status"]) if row["from_status"] is not None else None,
                str(row["to_status"]),
            )
            for row in rows
        ]


def _row_to_accommodation(row: sqlite3.Row) -> Accommodation:
    return Accommodation(
        accommodation_id=int(row["id"]),
        title=str(row["title"]),
        max_bookings=int(row["max_bookings"]),
        guest_capacity=int(row["guest_capacity"]),
        gender_restriction=GenderRestriction(row["gender_restriction"]),
        price_term=PriceTerm(row["price_term"]),
        price=int(row["price"]),
        admin_status=AdminStatus(row["admin_status"]),
    )
