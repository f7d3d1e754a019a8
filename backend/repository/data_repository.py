"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from backend.domain.errors import PersistenceError
from backend.domain.models import (
    AvailabilityHistoryEntry,
    AvailabilityRecord,
    AvailabilityStatus,
    BusinessHours,
    ChangeReason,
    Conversation,
    ConversationMessage,
    Mailbox,
    SessionMetrics,
    TeamMember,
    TeamRole,
)
from backend.utils.clock import from_db_timestamp, to_db_timestamp, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

_AVAILABILITY_COLUMNS = """
    user_id,
    mailbox_id,
    status,
    custom_message,
    last_activity_at,
    last_status_change_at,
    auto_away_at,
    scheduled_return_at,
    business_hours
"""


def _dump_json(value: Optional[dict]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def _row_to_record(row: sqlite3.Row) -> AvailabilityRecord:
    business_hours = row["business_hours"]
    return AvailabilityRecord(
        user_id=str(row["user_id"]),
        mailbox_id=int(row["mailbox_id"]),
        status=AvailabilityStatus(row["status"]),
        custom_message=row["custom_message"],
        last_activity_at=from_db_timestamp(row["last_activity_at"]),
        last_status_change_at=from_db_timestamp(row["last_status_change_at"]),
        auto_away_at=from_db_timestamp(row["auto_away_at"]),
        scheduled_return_at=from_db_timestamp(row["scheduled_return_at"]),
        business_hours=(
            BusinessHours.from_dict(json.loads(business_hours))
            if business_hours
            else None
        ),
    )


def _row_to_history(row: sqlite3.Row) -> AvailabilityHistoryEntry:
    session_data = row["session_data"]
    duration = row["duration_seconds"]
    return AvailabilityHistoryEntry(
        user_id=str(row["user_id"]),
        mailbox_id=int(row["mailbox_id"]),
        from_status=AvailabilityStatus(row["from_status"]),
        to_status=AvailabilityStatus(row["to_status"]),
        duration_seconds=int(duration) if duration is not None else None,
        change_reason=ChangeReason(row["change_reason"]),
        created_at=from_db_timestamp(row["created_at"]),
        session_data=(
            SessionMetrics.from_dict(json.loads(session_data))
            if session_data
            else None
        ),
    )


def _row_to_member(row: sqlite3.Row) -> TeamMember:
    return TeamMember(
        user_id=str(row["user_id"]),
        mailbox_id=int(row["mailbox_id"]),
        display_name=str(row["display_name"]),
        role=TeamRole(row["role"]),
        keywords=tuple(json.loads(row["keywords"] or "[]")),
    )


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
        connection = sqlite3.connect(self._db_path, timeout=30.0)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _transaction(self, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose work commits together or not at all."""
        try:
            connection = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database connection failed: {exc}") from exc
        try:
            if immediate:
                connection.execute("BEGIN IMMEDIATE;")
            yield connection
            connection.commit()
        except sqlite3.Error as exc:
            connection.rollback()
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        with self._transaction() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Mailboxes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS TeamMembers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    mailbox_id INTEGER NOT NULL,
                    user_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('core', 'non_core', 'afk')),
                    keywords TEXT NOT NULL DEFAULT '[]',
                    UNIQUE (mailbox_id, user_id),
                    FOREIGN KEY (mailbox_id) REFERENCES Mailboxes(id)
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    mailbox_id INTEGER NOT NULL,
                    subject TEXT,
                    status TEXT NOT NULL DEFAULT 'open'
                        CHECK (status IN ('open', 'closed', 'spam')),
                    assigned_to_id TEXT,
                    merged_into_id INTEGER,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (mailbox_id) REFERENCES Mailboxes(id)
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ConversationMessages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    cleaned_up_text TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (conversation_id) REFERENCES Conversations(id)
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ConversationNotes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    body TEXT NOT NULL,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (conversation_id) REFERENCES Conversations(id)
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS UserAvailability (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    mailbox_id INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'offline'
                        CHECK (status IN ('online', 'busy', 'away', 'offline')),
                    custom_message TEXT,
                    last_activity_at TEXT NOT NULL,
                    last_status_change_at TEXT NOT NULL,
                    auto_away_at TEXT,
                    scheduled_return_at TEXT,
                    business_hours TEXT,
                    UNIQUE (user_id, mailbox_id)
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS AvailabilityHistory (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    mailbox_id INTEGER NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    duration_seconds INTEGER,
                    change_reason TEXT NOT NULL,
                    session_data TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS RotationCursors (
                    mailbox_id INTEGER PRIMARY KEY,
                    position INTEGER NOT NULL DEFAULT 0,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );
                """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_availability_mailbox_status
                ON UserAvailability(mailbox_id, status);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_availability_scheduled_return
                ON UserAvailability(status, scheduled_return_at);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_availability_auto_away
                ON UserAvailability(status, auto_away_at);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_history_mailbox_created
                ON AvailabilityHistory(mailbox_id, created_at);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_conversations_mailbox_status_assignee
                ON Conversations(mailbox_id, status, assigned_to_id);
                """
            )
        logger.info("Database initialized at %s", self._db_path)

    def seed_demo_data_if_empty(self) -> int:
        """Seed a demo mailbox, roster and open conversations into an empty database."""
        with self._transaction() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM Mailboxes;")
            if int(cursor.fetchone()["count"]) > 0:
                logger.info("Demo data already present; skipping seed")
                return 0

            cursor.execute("INSERT INTO Mailboxes (name) VALUES (?);", ("Support",))
            mailbox_id = int(cursor.lastrowid)
            cursor.executemany(
                """
                INSERT INTO TeamMembers (mailbox_id, user_id, display_name, role, keywords)
                VALUES (?, ?, ?, ?, ?);
                """,
                [
                    (mailbox_id, "user_ada", "Ada", "core", json.dumps(["billing", "refund", "invoice"])),
                    (mailbox_id, "user_grace", "Grace", "core", json.dumps(["login", "password", "sso"])),
                    (mailbox_id, "user_linus", "Linus", "non_core", json.dumps(["api", "webhook"])),
                    (mailbox_id, "user_ken", "Ken", "afk", json.dumps([])),
                ],
            )

            conversations = [
                ("Refund for duplicate invoice", "I was charged twice, please refund the invoice."),
                ("Cannot log in with SSO", "The SSO login page loops back after entering my password."),
                ("Webhook retries", "Our webhook endpoint receives the same event many times."),
            ]
            for subject, body in conversations:
                cursor.execute(
                    "INSERT INTO Conversations (mailbox_id, subject) VALUES (?, ?);",
                    (mailbox_id, subject),
                )
                cursor.execute(
                    """
                    INSERT INTO ConversationMessages (conversation_id, role, cleaned_up_text)
                    VALUES (?, 'user', ?);
                    """,
                    (int(cursor.lastrowid), body),
                )
        logger.info(
            "Demo seed completed | mailbox_id=%s | conversations=%s",
            mailbox_id,
            len(conversations),
        )
        return len(conversations)

    # --- Mailboxes and roster ---

    def create_mailbox(self, name: str) -> int:
        with self._transaction() as conn:
            cursor = conn.cursor()
            cursor.execute("INSERT INTO Mailboxes (name) VALUES (?);", (name,))
            return int(cursor.lastrowid)

    def get_mailbox(self, mailbox_id: int) -> Optional[Mailbox]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, name FROM Mailboxes WHERE id = ?;",
                (mailbox_id,),
            ).fetchone()
            if row is None:
                return None
            return Mailbox(mailbox_id=int(row["id"]), name=str(row["name"]))

    def add_team_member(
        self,
        mailbox_id: int,
        user_id: str,
        display_name: str,
        role: TeamRole,
        keywords: Sequence[str] = (),
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO TeamMembers (mailbox_id, user_id, display_name, role, keywords)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (mailbox_id, user_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    role = excluded.role,
                    keywords = excluded.keywords;
                """,
                (mailbox_id, user_id, display_name, role.value, json.dumps(list(keywords))),
            )

    def list_team_members(self, mailbox_id: int) -> List[TeamMember]:
        """Return every user with access to the mailbox, in roster order."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT user_id, mailbox_id, display_name, role, keywords
                FROM TeamMembers
                WHERE mailbox_id = ?
                ORDER BY id ASC;
                """,
                (mailbox_id,),
            ).fetchall()
            return [_row_to_member(row) for row in rows]

    def get_team_member(self, mailbox_id: int, user_id: str) -> Optional[TeamMember]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT user_id, mailbox_id, display_name, role, keywords
                FROM TeamMembers
                WHERE mailbox_id = ? AND user_id = ?;
                """,
                (mailbox_id, user_id),
            ).fetchone()
            return _row_to_member(row) if row is not None else None

    # --- Conversations ---

    def create_conversation(
        self,
        mailbox_id: int,
        subject: Optional[str],
        *,
        status: str = "open",
        assigned_to_id: Optional[str] = None,
        merged_into_id: Optional[int] = None,
        messages: Sequence[tuple[str, Optional[str]]] = (),
    ) -> int:
        """Insert a conversation with its messages and return the created id."""
        with self._transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Conversations (
                    mailbox_id,
                    subject,
                    status,
                    assigned_to_id,
                    merged_into_id
                )
                VALUES (?, ?, ?, ?, ?);
                """,
                (mailbox_id, subject, status, assigned_to_id, merged_into_id),
            )
            conversation_id = int(cursor.lastrowid)
            cursor.executemany(
                """
                INSERT INTO ConversationMessages (conversation_id, role, cleaned_up_text)
                VALUES (?, ?, ?);
                """,
                [(conversation_id, role, text) for role, text in messages],
            )
            return conversation_id

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT id, mailbox_id, subject, status, assigned_to_id, merged_into_id
                FROM Conversations
                WHERE id = ?;
                """,
                (conversation_id,),
            ).fetchone()
            if row is None:
                return None
            message_rows = conn.execute(
                """
                SELECT role, cleaned_up_text
                FROM ConversationMessages
                WHERE conversation_id = ?
                ORDER BY id ASC;
                """,
                (conversation_id,),
            ).fetchall()
            return Conversation(
                conversation_id=int(row["id"]),
                mailbox_id=int(row["mailbox_id"]),
                subject=row["subject"],
                status=str(row["status"]),
                assigned_to_id=row["assigned_to_id"],
                merged_into_id=row["merged_into_id"],
                messages=tuple(
                    ConversationMessage(
                        role=str(message["role"]),
                        cleaned_up_text=message["cleaned_up_text"],
                    )
                    for message in message_rows
                ),
            )

    def assign_conversation(self, conversation_id: int, assignee_id: str, note: str) -> bool:
        """Set the assignee and append a note; False when someone assigned it first."""
        with self._transaction(immediate=True) as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Conversations
                SET assigned_to_id = ?
                WHERE id = ? AND assigned_to_id IS NULL AND merged_into_id IS NULL;
                """,
                (assignee_id, conversation_id),
            )
            if cursor.rowcount != 1:
                return False
            cursor.execute(
                "INSERT INTO ConversationNotes (conversation_id, body) VALUES (?, ?);",
                (conversation_id, note),
            )
            return True

    def list_conversation_notes(self, conversation_id: int) -> List[str]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT body FROM ConversationNotes
                WHERE conversation_id = ?
                ORDER BY id ASC;
                """,
                (conversation_id,),
            ).fetchall()
            return [str(row["body"]) for row in rows]

    def count_open_conversations_by_assignee(self, mailbox_id: int) -> dict[str, int]:
        """Aggregate open, assigned conversations per assignee."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT assigned_to_id AS user_id, COUNT(*) AS conversation_count
                FROM Conversations
                WHERE mailbox_id = ?
                  AND status = 'open'
                  AND assigned_to_id IS NOT NULL
                GROUP BY assigned_to_id;
                """,
                (mailbox_id,),
            ).fetchall()
            return {str(row["user_id"]): int(row["conversation_count"]) for row in rows}

    # --- Availability ---

    def get_availability(self, user_id: str, mailbox_id: int) -> Optional[AvailabilityRecord]:
        with self._transaction() as conn:
            row = conn.execute(
                f"""
                SELECT {_AVAILABILITY_COLUMNS}
                FROM UserAvailability
                WHERE user_id = ? AND mailbox_id = ?;
                """,
                (user_id, mailbox_id),
            ).fetchone()
            return _row_to_record(row) if row is not None else None

    def list_team_availability(self, mailbox_id: int) -> List[AvailabilityRecord]:
        """Return all availability rows for a mailbox, most recently active first."""
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_AVAILABILITY_COLUMNS}
                FROM UserAvailability
                WHERE mailbox_id = ?
                ORDER BY last_activity_at DESC, id ASC;
                """,
                (mailbox_id,),
            ).fetchall()
            return [_row_to_record(row) for row in rows]

    def save_availability_fields(
        self,
        record: AvailabilityRecord,
        expected_status: Optional[AvailabilityStatus],
    ) -> bool:
        """Insert or patch non-status fields while the row still holds ``expected_status``.

        ``expected_status`` is ``None`` when the caller saw no row. Returns False
        without writing when the row was created or moved to another status in
        the meantime.
        """
        with self._transaction(immediate=True) as conn:
            if expected_status is None:
                cursor = conn.execute(
                    f"""
                    INSERT INTO UserAvailability ({_AVAILABILITY_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, mailbox_id) DO NOTHING;
                    """,
                    self._record_params(record),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE UserAvailability
                    SET custom_message = ?,
                        last_activity_at = ?,
                        auto_away_at = ?,
                        scheduled_return_at = ?,
                        business_hours = ?
                    WHERE user_id = ? AND mailbox_id = ? AND status = ?;
                    """,
                    (
                        record.custom_message,
                        to_db_timestamp(record.last_activity_at),
                        to_db_timestamp(record.auto_away_at),
                        to_db_timestamp(record.scheduled_return_at),
                        _dump_json(record.business_hours.to_dict() if record.business_hours else None),
                        record.user_id,
                        record.mailbox_id,
                        expected_status.value,
                    ),
                )
            return cursor.rowcount == 1

    def apply_status_transition(
        self,
        record: AvailabilityRecord,
        entry: AvailabilityHistoryEntry,
        expected_status: Optional[AvailabilityStatus],
    ) -> bool:
        """Write the new record state and its history entry in one transaction.

        ``expected_status`` is the status the caller read (``None`` when no row
        existed). Returns False without writing when the row moved on in the
        meantime, so a lost race never appends a duplicate history entry.
        """
        with self._transaction(immediate=True) as conn:
            cursor = conn.cursor()
            if expected_status is None:
                cursor.execute(
                    f"""
                    INSERT INTO UserAvailability ({_AVAILABILITY_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (user_id, mailbox_id) DO NOTHING;
                    """,
                    self._record_params(record),
                )
            else:
                cursor.execute(
                    """
                    UPDATE UserAvailability
                    SET status = ?,
                        custom_message = ?,
                        last_activity_at = ?,
                        last_status_change_at = ?,
                        auto_away_at = ?,
                        scheduled_return_at = ?,
                        business_hours = ?
                    WHERE user_id = ? AND mailbox_id = ? AND status = ?;
                    """,
                    (
                        record.status.value,
                        record.custom_message,
                        to_db_timestamp(record.last_activity_at),
                        to_db_timestamp(record.last_status_change_at),
                        to_db_timestamp(record.auto_away_at),
                        to_db_timestamp(record.scheduled_return_at),
                        _dump_json(record.business_hours.to_dict() if record.business_hours else None),
                        record.user_id,
                        record.mailbox_id,
                        expected_status.value,
                    ),
                )
            if cursor.rowcount != 1:
                return False

            cursor.execute(
                """
                INSERT INTO AvailabilityHistory (
                    user_id,
                    mailbox_id,
                    from_status,
                    to_status,
                    duration_seconds,
                    change_reason,
                    session_data,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    entry.user_id,
                    entry.mailbox_id,
                    entry.from_status.value,
                    entry.to_status.value,
                    entry.duration_seconds,
                    entry.change_reason.value,
                    _dump_json(entry.session_data.to_dict() if entry.session_data else None),
                    to_db_timestamp(entry.created_at),
                ),
            )
            return True

    def list_due_scheduled_returns(self, now: datetime) -> List[AvailabilityRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_AVAILABILITY_COLUMNS}
                FROM UserAvailability
                WHERE status = 'away'
                  AND scheduled_return_at IS NOT NULL
                  AND scheduled_return_at <= ?
                ORDER BY scheduled_return_at ASC, id ASC;
                """,
                (to_db_timestamp(now),),
            ).fetchall()
            return [_row_to_record(row) for row in rows]

    def list_due_auto_away(self, now: datetime) -> List[AvailabilityRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_AVAILABILITY_COLUMNS}
                FROM UserAvailability
                WHERE status = 'online'
                  AND auto_away_at IS NOT NULL
                  AND auto_away_at <= ?
                ORDER BY auto_away_at ASC, id ASC;
                """,
                (to_db_timestamp(now),),
            ).fetchall()
            return [_row_to_record(row) for row in rows]

    # --- History ---

    def list_availability_history(
        self,
        mailbox_id: int,
        start: datetime,
        end: datetime,
    ) -> List[AvailabilityHistoryEntry]:
        """Return history entries created within [start, end], newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM AvailabilityHistory
                WHERE mailbox_id = ?
                  AND created_at >= ?
                  AND created_at <= ?
                ORDER BY created_at DESC, id DESC;
                """,
                (mailbox_id, to_db_timestamp(start), to_db_timestamp(end)),
            ).fetchall()
            return [_row_to_history(row) for row in rows]

    def list_user_history(self, user_id: str, mailbox_id: int) -> List[AvailabilityHistoryEntry]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM AvailabilityHistory
                WHERE user_id = ? AND mailbox_id = ?
                ORDER BY id ASC;
                """,
                (user_id, mailbox_id),
            ).fetchall()
            return [_row_to_history(row) for row in rows]

    # --- Rotation cursor ---

    def get_rotation_cursor(self, mailbox_id: int) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT position FROM RotationCursors WHERE mailbox_id = ?;",
                (mailbox_id,),
            ).fetchone()
            return int(row["position"]) if row is not None else 0

    def advance_rotation_cursor(
        self,
        mailbox_id: int,
        tied_count: int,
        max_attempts: Optional[int] = None,
    ) -> int:
        """Move the mailbox cursor to ``(cursor + 1) % tied_count`` via compare-and-swap."""
        if tied_count <= 0:
            raise ValueError("tied_count must be > 0")
        attempts = max_attempts or self._settings.rotation_cas_max_attempts
        next_position = 0
        for attempt in range(1, attempts + 1):
            with self._transaction() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "INSERT OR IGNORE INTO RotationCursors (mailbox_id, position) VALUES (?, 0);",
                    (mailbox_id,),
                )
                current = int(
                    cursor.execute(
                        "SELECT position FROM RotationCursors WHERE mailbox_id = ?;",
                        (mailbox_id,),
                    ).fetchone()["position"]
                )
                next_position = (current + 1) % tied_count
                cursor.execute(
                    """
                    UPDATE RotationCursors
                    SET position = ?, updated_at = ?
                    WHERE mailbox_id = ? AND position = ?;
                    """,
                    (next_position, to_db_timestamp(utc_now()), mailbox_id, current),
                )
                if cursor.rowcount == 1:
                    return next_position
            logger.debug(
                "Rotation cursor CAS conflict | mailbox_id=%s | attempt=%s",
                mailbox_id,
                attempt,
            )
        logger.warning(
            "Rotation cursor CAS attempts exhausted | mailbox_id=%s | using=%s",
            mailbox_id,
            next_position,
        )
        return next_position

    @staticmethod
    def _record_params(record: AvailabilityRecord) -> tuple:
        return (
            record.user_id,
            record.mailbox_id,
            record.status.value,
            record.custom_message,
            to_db_timestamp(record.last_activity_at),
            to_db_timestamp(record.last_status_change_at),
            to_db_timestamp(record.auto_away_at),
            to_db_timestamp(record.scheduled_return_at),
            _dump_json(record.business_hours.to_dict() if record.business_hours else None),
        )

