"""
Contact and Communication storage for PKB.

Communications are owned by the ingestion side (sync scripts, importers).
The FRF pipeline only reads them and sets frf_processed_at once a batch that
contains them has been committed.
"""
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from pkb.services.crm_db import get_connection, init_crm_db
from pkb.utils.datetime_utils import parse_timestamp, to_utc_iso, utc_now
from pkb.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)

DIRECTIONS = ("inbound", "outbound")


@dataclass
class Contact:
    """A person in the CRM."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    display_name: str = ""
    created_at: datetime = field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Contact":
        return cls(
            id=row["id"],
            display_name=row["display_name"],
            created_at=parse_timestamp(row["created_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
        )


@dataclass
class Communication:
    """A single message, email or call note exchanged with a contact."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    contact_id: Optional[str] = None
    content: str = ""
    source: str = ""  # imessage, gmail, whatsapp, call, ...
    direction: str = "inbound"  # inbound or outbound
    subject: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    frf_processed_at: Optional[datetime] = None
    contact_name: str = ""  # joined from contacts, not stored

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Communication":
        keys = row.keys()
        return cls(
            id=row["id"],
            contact_id=row["contact_id"],
            content=row["content"],
            source=row["source"],
            direction=row["direction"],
            subject=row["subject"],
            timestamp=parse_timestamp(row["timestamp"]),
            frf_processed_at=parse_timestamp(row["frf_processed_at"]),
            contact_name=row["contact_name"] if "contact_name" in keys else "",
        )


@dataclass
class UnprocessedContact:
    """A contact with at least one communication the pipeline hasn't seen."""
    contact_id: str
    contact_name: str
    unprocessed_count: int


_COMMUNICATION_COLUMNS = """
    cm.id, cm.contact_id, cm.content, cm.source, cm.direction, cm.subject,
    cm.timestamp, cm.frf_processed_at, c.display_name AS contact_name
"""


class CommunicationStore:
    """
    SQLite-backed storage for contacts and their communications.
    """

    def __init__(self, db_path: Optional[str] = None):
        """Initialize communication store."""
        self.db_path = db_path or get_crm_db_path()
        self._init_db()

    def _init_db(self):
        init_crm_db(self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def add_contact(self, display_name: str, contact_id: Optional[str] = None) -> Contact:
        """Add a new contact."""
        contact = Contact(display_name=display_name)
        if contact_id:
            contact.id = contact_id
        conn = self._get_connection()
        try:
            conn.execute(
                "INSERT INTO contacts (id, display_name, created_at) VALUES (?, ?, ?)",
                (contact.id, contact.display_name, to_utc_iso(contact.created_at)),
            )
            conn.commit()
            return contact
        finally:
            conn.close()

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        """Get a non-deleted contact by ID."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ? AND deleted_at IS NULL",
                (contact_id,),
            ).fetchone()
            return Contact.from_row(row) if row else None
        finally:
            conn.close()

    def delete_contact(self, contact_id: str) -> bool:
        """Soft-delete a contact. Its communications drop out of the pipeline."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "UPDATE contacts SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (to_utc_iso(utc_now()), contact_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Communications
    # -------------------------------------------------------------------------

    def add_communication(
        self,
        contact_id: Optional[str],
        content: str,
        source: str,
        direction: str = "inbound",
        subject: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        communication_id: Optional[str] = None,
    ) -> Communication:
        """
        Record an ingested communication.

        Args:
            contact_id: Owning contact (None for unmatched senders)
            content: Message body or call summary
            source: Channel name (imessage, gmail, ...)
            direction: "inbound" or "outbound"
            subject: Email subject, if any
            timestamp: When it was sent (defaults to now)
            communication_id: Explicit ID (generated if omitted)

        Returns:
            The stored Communication
        """
        if direction not in DIRECTIONS:
            raise ValueError(f"Invalid direction: {direction}")

        comm = Communication(
            contact_id=contact_id,
            content=content,
            source=source,
            direction=direction,
            subject=subject,
            timestamp=timestamp or utc_now(),
        )
        if communication_id:
            comm.id = communication_id

        conn = self._get_connection()
        try:
            conn.execute("""
                INSERT INTO communications
                (id, contact_id, content, source, direction, subject, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                comm.id,
                comm.contact_id,
                comm.content,
                comm.source,
                comm.direction,
                comm.subject,
                to_utc_iso(comm.timestamp),
            ))
            conn.commit()
            return comm
        finally:
            conn.close()

    def get_communication(self, communication_id: str) -> Optional[Communication]:
        conn = self._get_connection()
        try:
            row = conn.execute(f"""
                SELECT {_COMMUNICATION_COLUMNS}
                FROM communications cm
                LEFT JOIN contacts c ON c.id = cm.contact_id
                WHERE cm.id = ?
            """, (communication_id,)).fetchone()
            return Communication.from_row(row) if row else None
        finally:
            conn.close()

    def get_unprocessed_contacts(self, min_content_length: int = 20) -> list[UnprocessedContact]:
        """
        Get contacts with at least one unprocessed communication.

        Communications shorter than min_content_length are ignored entirely.
        Ordered by unprocessed count, largest first.
        """
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT cm.contact_id, c.display_name AS contact_name,
                       COUNT(*) AS unprocessed_count
                FROM communications cm
                JOIN contacts c ON c.id = cm.contact_id
                WHERE cm.frf_processed_at IS NULL
                  AND c.deleted_at IS NULL
                  AND cm.contact_id IS NOT NULL
                  AND LENGTH(cm.content) >= ?
                GROUP BY cm.contact_id, c.display_name
                ORDER BY unprocessed_count DESC, cm.contact_id
            """, (min_content_length,)).fetchall()
            return [
                UnprocessedContact(
                    contact_id=row["contact_id"],
                    contact_name=row["contact_name"],
                    unprocessed_count=row["unprocessed_count"],
                )
                for row in rows
            ]
        finally:
            conn.close()

    def get_unprocessed_communications(
        self, contact_id: str, min_content_length: int = 20
    ) -> list[Communication]:
        """Get a contact's unprocessed communications, oldest first."""
        conn = self._get_connection()
        try:
            rows = conn.execute(f"""
                SELECT {_COMMUNICATION_COLUMNS}
                FROM communications cm
                JOIN contacts c ON c.id = cm.contact_id
                WHERE cm.contact_id = ?
                  AND cm.frf_processed_at IS NULL
                  AND LENGTH(cm.content) >= ?
                ORDER BY cm.timestamp ASC, cm.id ASC
            """, (contact_id, min_content_length)).fetchall()
            return [Communication.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_context_communications(
        self, contact_id: str, limit: int, min_content_length: int = 20
    ) -> list[Communication]:
        """
        Get the most recent already-processed communications, oldest first.

        Used as read-only background for extraction.
        """
        if limit <= 0:
            return []
        conn = self._get_connection()
        try:
            rows = conn.execute(f"""
                SELECT {_COMMUNICATION_COLUMNS}
                FROM communications cm
                JOIN contacts c ON c.id = cm.contact_id
                WHERE cm.contact_id = ?
                  AND cm.frf_processed_at IS NOT NULL
                  AND LENGTH(cm.content) >= ?
                ORDER BY cm.timestamp DESC, cm.id DESC
                LIMIT ?
            """, (contact_id, min_content_length, limit)).fetchall()
            return [Communication.from_row(row) for row in reversed(rows)]
        finally:
            conn.close()

    def mark_processed(self, communication_ids: list[str]) -> int:
        """
        Mark communications as processed in a single UPDATE.

        Returns:
            Number of rows updated
        """
        if not communication_ids:
            return 0
        placeholders = ",".join("?" for _ in communication_ids)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE communications SET frf_processed_at = ? WHERE id IN ({placeholders})",
                [to_utc_iso(utc_now()), *communication_ids],
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def reset_processed(self, contact_id: Optional[str] = None) -> int:
        """Clear frf_processed_at so communications are re-extracted."""
        conn = self._get_connection()
        try:
            if contact_id:
                cursor = conn.execute(
                    "UPDATE communications SET frf_processed_at = NULL WHERE contact_id = ?",
                    (contact_id,),
                )
            else:
                cursor = conn.execute("UPDATE communications SET frf_processed_at = NULL")
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


# Singleton instance
_communication_store: Optional[CommunicationStore] = None


def get_communication_store(db_path: Optional[str] = None) -> CommunicationStore:
    """Get or create the communication store singleton."""
    global _communication_store
    if _communication_store is None:
        _communication_store = CommunicationStore(db_path)
    return _communication_store
