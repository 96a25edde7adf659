"""
Followup storage for the PKB CRM.

Followups are reminders to get back to a contact. The FRF pipeline creates
"content_detected" followups through create_content_detected_followup(), which
gates them on:
- age: the triggering communication must be within the cutoff window
- idempotency: no open followup for the same contact with the same reason

The pipeline never edits the reason or due date of an open followup.
"""
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from pkb.services.crm_db import get_connection, init_crm_db, transaction
from pkb.services.resilience import NotFoundError, PersistenceFailedError
from pkb.utils.datetime_utils import make_aware, parse_timestamp, to_utc_iso, utc_now
from pkb.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)

FOLLOWUP_TYPES = ("content_detected", "time_based", "manual")


class FollowupOutcome(str, Enum):
    """What the followup gate did with a suggested followup."""
    CREATED = "created"
    SKIPPED_CUTOFF = "skipped_cutoff"
    SKIPPED_DUPLICATE = "skipped_duplicate"


@dataclass
class Followup:
    """A reminder to follow up with a contact."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    contact_id: str = ""
    type: str = "manual"
    reason: str = ""
    due_date: str = ""  # YYYY-MM-DD
    source_communication_id: Optional[str] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contact_id": self.contact_id,
            "type": self.type,
            "reason": self.reason,
            "due_date": self.due_date,
            "source_communication_id": self.source_communication_id,
            "completed": self.completed,
            "completed_at": to_utc_iso(self.completed_at),
            "created_at": to_utc_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Followup":
        return cls(
            id=row["id"],
            contact_id=row["contact_id"],
            type=row["type"],
            reason=row["reason"],
            due_date=row["due_date"],
            source_communication_id=row["source_communication_id"],
            completed=bool(row["completed"]),
            completed_at=parse_timestamp(row["completed_at"]),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class FollowupGateResult:
    outcome: FollowupOutcome
    followup: Optional[Followup] = None


def is_within_followup_cutoff(
    timestamp: datetime, cutoff_days: int, now: Optional[datetime] = None
) -> bool:
    """True if timestamp is no older than now - cutoff_days."""
    now = now or utc_now()
    return make_aware(timestamp) >= now - timedelta(days=cutoff_days)


def normalize_due_date(value: Optional[str], default_days: int = 7) -> str:
    """
    Coerce an LLM-suggested date to YYYY-MM-DD.

    Unparseable or missing dates fall back to today + default_days.
    """
    if value:
        try:
            return date.fromisoformat(str(value).strip()[:10]).isoformat()
        except ValueError:
            logger.debug(f"Unparseable followup date: {value}")
    return (utc_now().date() + timedelta(days=default_days)).isoformat()


class FollowupStore:
    """
    SQLite-backed storage for followups.
    """

    def __init__(self, db_path: Optional[str] = None):
        """Initialize followup store."""
        self.db_path = db_path or get_crm_db_path()
        self._init_db()

    def _init_db(self):
        init_crm_db(self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    def _insert(self, conn: sqlite3.Connection, followup: Followup):
        conn.execute("""
            INSERT INTO followups
            (id, contact_id, type, reason, due_date, source_communication_id,
             completed, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?)
        """, (
            followup.id,
            followup.contact_id,
            followup.type,
            followup.reason,
            followup.due_date,
            followup.source_communication_id,
            to_utc_iso(followup.created_at),
        ))

    def get(self, followup_id: str) -> Optional[Followup]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM followups WHERE id = ?", (followup_id,)).fetchone()
            return Followup.from_row(row) if row else None
        finally:
            conn.close()

    def list_for_contact(self, contact_id: str, include_completed: bool = False) -> list[Followup]:
        """List a contact's followups ordered by due date."""
        query = "SELECT * FROM followups WHERE contact_id = ?"
        if not include_completed:
            query += " AND completed = 0"
        query += " ORDER BY due_date, created_at"
        conn = self._get_connection()
        try:
            return [Followup.from_row(row) for row in conn.execute(query, (contact_id,)).fetchall()]
        finally:
            conn.close()

    def create_followup(
        self,
        contact_id: str,
        reason: str,
        due_date: str,
        followup_type: str = "manual",
    ) -> Followup:
        """
        Create a followup directly (manual or time-based).

        At most one open followup per (contact, reason): if one already
        exists it is returned unchanged.
        """
        if followup_type not in FOLLOWUP_TYPES:
            raise ValueError(f"Invalid followup type: {followup_type}")
        followup = Followup(
            contact_id=contact_id,
            type=followup_type,
            reason=reason,
            due_date=normalize_due_date(due_date),
        )
        conn = self._get_connection()
        try:
            try:
                self._insert(conn, followup)
                conn.commit()
                return followup
            except sqlite3.IntegrityError:
                conn.rollback()
                row = self._find_open(conn, contact_id, reason)
                if row is None:
                    raise
                logger.debug(f"Open followup already exists for {contact_id}: {reason}")
                return Followup.from_row(row)
        finally:
            conn.close()

    def _find_open(self, conn: sqlite3.Connection, contact_id: str, reason: str) -> Optional[sqlite3.Row]:
        return conn.execute("""
            SELECT * FROM followups
            WHERE contact_id = ? AND reason = ? AND completed = 0
        """, (contact_id, reason)).fetchone()

    def complete(self, followup_id: str) -> Followup:
        """
        Mark a followup completed.

        Raises:
            NotFoundError: If the followup doesn't exist
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                UPDATE followups SET completed = 1, completed_at = ?
                WHERE id = ? AND completed = 0
            """, (to_utc_iso(utc_now()), followup_id))
            conn.commit()
            row = conn.execute("SELECT * FROM followups WHERE id = ?", (followup_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Followup not found: {followup_id}")
            if cursor.rowcount == 0:
                logger.debug(f"Followup {followup_id} was already completed")
            return Followup.from_row(row)
        finally:
            conn.close()

    def create_content_detected_followup(
        self,
        contact_id: str,
        source_communication_id: Optional[str],
        reason: str,
        suggested_date: Optional[str],
        communication_timestamp: Optional[datetime] = None,
        cutoff_days: int = 90,
    ) -> FollowupGateResult:
        """
        Gate and create a followup detected in a communication.

        Args:
            contact_id: Contact the followup is for
            source_communication_id: Communication it was detected in
            reason: What needs to be done (idempotency key among open followups)
            suggested_date: Due date suggested by extraction (YYYY-MM-DD)
            communication_timestamp: When the triggering communication was sent;
                when given, older than cutoff_days means no followup
            cutoff_days: Maximum age of the triggering communication

        Returns:
            FollowupGateResult with the outcome and the created followup (if any)

        Raises:
            PersistenceFailedError: If the database write fails
        """
        if communication_timestamp is not None:
            if not is_within_followup_cutoff(communication_timestamp, cutoff_days):
                logger.debug(
                    f"Skipping followup for {contact_id}: communication "
                    f"{source_communication_id} older than {cutoff_days} days"
                )
                return FollowupGateResult(FollowupOutcome.SKIPPED_CUTOFF)

        followup = Followup(
            contact_id=contact_id,
            type="content_detected",
            reason=reason,
            due_date=normalize_due_date(suggested_date),
            source_communication_id=source_communication_id,
        )
        conn = self._get_connection()
        try:
            with transaction(conn):
                if self._find_open(conn, contact_id, reason) is not None:
                    logger.debug(f"Open followup already exists for {contact_id}: {reason}")
                    return FollowupGateResult(FollowupOutcome.SKIPPED_DUPLICATE)
                self._insert(conn, followup)
            return FollowupGateResult(FollowupOutcome.CREATED, followup)
        except sqlite3.Error as e:
            raise PersistenceFailedError("followup", str(e)) from e
        finally:
            conn.close()


# Singleton instance
_followup_store: Optional[FollowupStore] = None


def get_followup_store(db_path: Optional[str] = None) -> FollowupStore:
    """Get or create the singleton FollowupStore."""
    global _followup_store
    if _followup_store is None:
        _followup_store = FollowupStore(db_path)
    return _followup_store
