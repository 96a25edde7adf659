"""
Relationship storage and reciprocal inference for the PKB CRM.

A relationship is a labelled tie from a contact to a named person
("Alice -> parent -> Bob Smith"). When the person is itself a contact
(linked_contact_id is set) and the label has an inverse in
config.relationship_labels, a reciprocal row owned by the linked contact is
maintained automatically ("Bob -> child -> Alice").

Reciprocal maintenance:
- create/update with a link: upsert the reciprocal, person_name is the
  owner's display name
- link removed or moved: soft-delete only the old reciprocal row, then
  create the new one
- delete: soft-delete the row and its reciprocal counterpart
"""
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from config.relationship_labels import inverse_label, normalize_label
from pkb.services.crm_db import get_connection, init_crm_db, transaction
from pkb.services.resilience import NotFoundError, PersistenceFailedError
from pkb.utils.datetime_utils import parse_timestamp, to_utc_iso, utc_now
from pkb.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)

# Sentinel for "argument not supplied" (None means "unlink")
_UNSET: Any = object()


@dataclass
class Relationship:
    """A labelled relationship from a contact to a person."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    contact_id: str = ""
    label: str = ""
    person_name: str = ""
    linked_contact_id: Optional[str] = None
    source: str = "manual"  # manual or extracted
    source_communication_id: Optional[str] = None
    confidence: Optional[float] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contact_id": self.contact_id,
            "label": self.label,
            "person_name": self.person_name,
            "linked_contact_id": self.linked_contact_id,
            "source": self.source,
            "source_communication_id": self.source_communication_id,
            "confidence": self.confidence,
            "created_at": to_utc_iso(self.created_at),
            "updated_at": to_utc_iso(self.updated_at),
            "deleted_at": to_utc_iso(self.deleted_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Relationship":
        return cls(
            id=row["id"],
            contact_id=row["contact_id"],
            label=row["label"],
            person_name=row["person_name"],
            linked_contact_id=row["linked_contact_id"],
            source=row["source"],
            source_communication_id=row["source_communication_id"],
            confidence=row["confidence"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
        )


class RelationshipStore:
    """
    SQLite-backed storage for relationships, with reciprocal inference.
    """

    def __init__(self, db_path: Optional[str] = None):
        """Initialize relationship store."""
        self.db_path = db_path or get_crm_db_path()
        self._init_db()

    def _init_db(self):
        init_crm_db(self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    def _fetch(self, conn: sqlite3.Connection, relationship_id: str) -> Optional[Relationship]:
        row = conn.execute(
            "SELECT * FROM relationships WHERE id = ?", (relationship_id,)
        ).fetchone()
        return Relationship.from_row(row) if row else None

    def _insert(self, conn: sqlite3.Connection, rel: Relationship):
        conn.execute("""
            INSERT INTO relationships
            (id, contact_id, label, person_name, linked_contact_id, source,
             source_communication_id, confidence, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            rel.id,
            rel.contact_id,
            rel.label,
            rel.person_name,
            rel.linked_contact_id,
            rel.source,
            rel.source_communication_id,
            rel.confidence,
            to_utc_iso(rel.created_at),
            to_utc_iso(rel.updated_at),
        ))

    # -------------------------------------------------------------------------
    # Reciprocal maintenance
    # -------------------------------------------------------------------------

    def _find_reciprocal(
        self,
        conn: sqlite3.Connection,
        owner_id: str,
        label: str,
        linked_contact_id: Optional[str],
    ) -> Optional[Relationship]:
        """Find the live row that mirrors (owner_id, label) -> linked_contact_id."""
        inverse = inverse_label(label)
        if not linked_contact_id or inverse is None:
            return None
        row = conn.execute("""
            SELECT * FROM relationships
            WHERE contact_id = ? AND linked_contact_id = ? AND label = ?
              AND deleted_at IS NULL
            ORDER BY created_at, id
            LIMIT 1
        """, (linked_contact_id, owner_id, inverse)).fetchone()
        return Relationship.from_row(row) if row else None

    def _soft_delete_reciprocal(
        self,
        conn: sqlite3.Connection,
        owner_id: str,
        label: str,
        linked_contact_id: Optional[str],
    ) -> Optional[str]:
        reciprocal = self._find_reciprocal(conn, owner_id, label, linked_contact_id)
        if reciprocal is None:
            return None
        now = to_utc_iso(utc_now())
        conn.execute(
            "UPDATE relationships SET deleted_at = ?, updated_at = ? WHERE id = ?",
            (now, now, reciprocal.id),
        )
        logger.debug(f"Soft-deleted reciprocal relationship {reciprocal.id}")
        return reciprocal.id

    def _upsert_reciprocal(self, conn: sqlite3.Connection, rel: Relationship) -> Optional[Relationship]:
        """
        Ensure the linked contact has a row pointing back at rel.contact_id.

        Returns the reciprocal row, or None if the label has no inverse or the
        linked contact doesn't exist.
        """
        inverse = inverse_label(rel.label)
        if not rel.linked_contact_id or inverse is None:
            return None
        if rel.linked_contact_id == rel.contact_id:
            return None

        existing = self._find_reciprocal(conn, rel.contact_id, rel.label, rel.linked_contact_id)
        if existing is not None:
            return existing

        owner = conn.execute(
            "SELECT display_name FROM contacts WHERE id = ? AND deleted_at IS NULL",
            (rel.contact_id,),
        ).fetchone()
        linked = conn.execute(
            "SELECT id FROM contacts WHERE id = ? AND deleted_at IS NULL",
            (rel.linked_contact_id,),
        ).fetchone()
        if owner is None or linked is None:
            logger.warning(
                f"Cannot infer reciprocal for relationship {rel.id}: contact missing"
            )
            return None
        owner_name = owner["display_name"]

        # An unlinked row for the same person (e.g. extracted earlier) gets linked
        # instead of duplicated
        row = conn.execute("""
            SELECT * FROM relationships
            WHERE contact_id = ? AND lower(label) = ? AND lower(person_name) = lower(?)
              AND deleted_at IS NULL
        """, (rel.linked_contact_id, inverse, owner_name)).fetchone()
        now = to_utc_iso(utc_now())
        if row is not None:
            conn.execute(
                "UPDATE relationships SET linked_contact_id = ?, updated_at = ? WHERE id = ?",
                (rel.contact_id, now, row["id"]),
            )
            return self._fetch(conn, row["id"])

        reciprocal = Relationship(
            contact_id=rel.linked_contact_id,
            label=inverse,
            person_name=owner_name,
            linked_contact_id=rel.contact_id,
            source=rel.source,
            source_communication_id=rel.source_communication_id,
            confidence=rel.confidence,
        )
        self._insert(conn, reciprocal)
        logger.info(
            f"Inferred reciprocal '{inverse}' for {rel.linked_contact_id} -> {rel.contact_id}"
        )
        return reciprocal

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def get(self, relationship_id: str) -> Optional[Relationship]:
        """Get relationship by ID (including soft-deleted)."""
        conn = self._get_connection()
        try:
            return self._fetch(conn, relationship_id)
        finally:
            conn.close()

    def list_for_contact(self, contact_id: str) -> list[Relationship]:
        """List a contact's live relationships ordered by label and name."""
        conn = self._get_connection()
        try:
            rows = conn.execute("""
                SELECT * FROM relationships
                WHERE contact_id = ? AND deleted_at IS NULL
                ORDER BY label, person_name
            """, (contact_id,)).fetchall()
            return [Relationship.from_row(row) for row in rows]
        finally:
            conn.close()

    def create_relationship(
        self,
        contact_id: str,
        label: str,
        person_name: str,
        linked_contact_id: Optional[str] = None,
    ) -> Relationship:
        """Create a manual relationship and its reciprocal (if linked)."""
        rel = Relationship(
            contact_id=contact_id,
            label=normalize_label(label),
            person_name=person_name,
            linked_contact_id=linked_contact_id,
            source="manual",
        )
        conn = self._get_connection()
        try:
            with transaction(conn):
                self._insert(conn, rel)
                self._upsert_reciprocal(conn, rel)
            return rel
        finally:
            conn.close()

    def update_relationship(
        self,
        relationship_id: str,
        label: Optional[str] = None,
        person_name: Optional[str] = None,
        linked_contact_id: Optional[str] = _UNSET,
    ) -> Relationship:
        """
        Update a relationship.

        Pass linked_contact_id=None to unlink. When the link or label changes,
        the previous reciprocal row is soft-deleted and a new one inferred.

        Raises:
            NotFoundError: If the relationship doesn't exist or is deleted
        """
        conn = self._get_connection()
        try:
            with transaction(conn):
                existing = self._fetch(conn, relationship_id)
                if existing is None or existing.deleted_at is not None:
                    raise NotFoundError(f"Relationship not found: {relationship_id}")

                new_label = normalize_label(label) if label is not None else existing.label
                new_name = person_name if person_name is not None else existing.person_name
                new_link = existing.linked_contact_id if linked_contact_id is _UNSET else linked_contact_id

                if new_link != existing.linked_contact_id or new_label != existing.label:
                    self._soft_delete_reciprocal(
                        conn, existing.contact_id, existing.label, existing.linked_contact_id
                    )

                conn.execute("""
                    UPDATE relationships
                    SET label = ?, person_name = ?, linked_contact_id = ?, updated_at = ?
                    WHERE id = ?
                """, (new_label, new_name, new_link, to_utc_iso(utc_now()), relationship_id))

                updated = self._fetch(conn, relationship_id)
                self._upsert_reciprocal(conn, updated)
                return updated
        finally:
            conn.close()

    def delete_relationship(self, relationship_id: str) -> bool:
        """Soft-delete a relationship and its reciprocal counterpart."""
        conn = self._get_connection()
        try:
            with transaction(conn):
                existing = self._fetch(conn, relationship_id)
                if existing is None or existing.deleted_at is not None:
                    return False
                now = to_utc_iso(utc_now())
                conn.execute(
                    "UPDATE relationships SET deleted_at = ?, updated_at = ? WHERE id = ?",
                    (now, now, relationship_id),
                )
                self._soft_delete_reciprocal(
                    conn, existing.contact_id, existing.label, existing.linked_contact_id
                )
                return True
        finally:
            conn.close()

    def create_extracted_relationship(
        self,
        contact_id: str,
        label: str,
        person_name: str,
        confidence: float,
        source_communication_id: Optional[str] = None,
    ) -> Optional[Relationship]:
        """
        Insert an extracted relationship unless an equivalent one exists.

        Equivalence is case-insensitive on (contact_id, label, person_name)
        among live rows.

        Returns:
            The new Relationship, or None if it already existed

        Raises:
            PersistenceFailedError: If the database write fails
        """
        rel = Relationship(
            contact_id=contact_id,
            label=normalize_label(label),
            person_name=person_name.strip(),
            source="extracted",
            source_communication_id=source_communication_id,
            confidence=confidence,
        )
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO relationships
                (id, contact_id, label, person_name, linked_contact_id, source,
                 source_communication_id, confidence, created_at, updated_at)
                VALUES (?, ?, ?, ?, NULL, 'extracted', ?, ?, ?, ?)
            """, (
                rel.id,
                rel.contact_id,
                rel.label,
                rel.person_name,
                rel.source_communication_id,
                rel.confidence,
                to_utc_iso(rel.created_at),
                to_utc_iso(rel.updated_at),
            ))
            conn.commit()
            if cursor.rowcount == 0:
                logger.debug(f"Relationship already exists: {rel.label} {rel.person_name}")
                return None
            return rel
        except sqlite3.Error as e:
            raise PersistenceFailedError("relationship", str(e)) from e
        finally:
            conn.close()


# Singleton instance
_relationship_store: Optional[RelationshipStore] = None


def get_relationship_store(db_path: Optional[str] = None) -> RelationshipStore:
    """Get or create the singleton RelationshipStore."""
    global _relationship_store
    if _relationship_store is None:
        _relationship_store = RelationshipStore(db_path)
    return _relationship_store
