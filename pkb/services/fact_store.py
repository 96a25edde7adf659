"""
Fact storage for the PKB CRM.

Facts are typed values about a contact (birthday, company, spouse, ...),
entered manually or extracted from communications by the FRF pipeline.

Conflict invariant: among the non-deleted facts sharing (contact_id,
fact_type), has_conflict is set on all of them iff more than one distinct
value exists. recheck_conflicts() restores it after every insert, update and
delete, inside the same transaction as the write.

Extracted facts go through create_extracted_fact(), which runs semantic dedup
(see fact_dedup) and supersession before inserting and reports what happened
as a FactCommitOutcome.
"""
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from config.fact_types import SINGLE_VALUED_FACT_TYPES, category_for, normalize_fact_type
from pkb.services.crm_db import get_connection, init_crm_db, transaction
from pkb.services.fact_dedup import check_semantic_duplicate, generate_fact_embedding
from pkb.services.resilience import NotFoundError, PersistenceFailedError
from pkb.utils.datetime_utils import parse_timestamp, to_utc_iso, utc_now
from pkb.utils.db_paths import get_crm_db_path

logger = logging.getLogger(__name__)


class FactCommitOutcome(str, Enum):
    """What create_extracted_fact() did with a candidate fact."""
    INSERTED = "inserted"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SUPERSEDED = "superseded"


class ResolveAction(str, Enum):
    KEEP = "keep"  # keep this fact, delete the rest of the group
    REPLACE = "replace"  # delete this fact in favour of replace_with_fact_id
    MERGE = "merge"  # both values are true, clear the flag without deleting


@dataclass
class Fact:
    """A single fact about a contact."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    contact_id: str = ""
    category: str = "custom"
    fact_type: str = "custom"
    value: str = ""
    structured_value: Optional[dict] = None
    source: str = "manual"  # manual or extracted
    source_communication_id: Optional[str] = None
    confidence: Optional[float] = None
    has_conflict: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "contact_id": self.contact_id,
            "category": self.category,
            "fact_type": self.fact_type,
            "value": self.value,
            "structured_value": self.structured_value,
            "source": self.source,
            "source_communication_id": self.source_communication_id,
            "confidence": self.confidence,
            "has_conflict": self.has_conflict,
            "created_at": to_utc_iso(self.created_at),
            "updated_at": to_utc_iso(self.updated_at),
            "deleted_at": to_utc_iso(self.deleted_at),
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Fact":
        structured = row["structured_value"]
        return cls(
            id=row["id"],
            contact_id=row["contact_id"],
            category=row["category"],
            fact_type=row["fact_type"],
            value=row["value"],
            structured_value=json.loads(structured) if structured else None,
            source=row["source"],
            source_communication_id=row["source_communication_id"],
            confidence=row["confidence"],
            has_conflict=bool(row["has_conflict"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
        )


@dataclass
class FactCommitResult:
    """Result of committing one extracted fact."""
    outcome: FactCommitOutcome
    fact: Optional[Fact] = None  # None when skipped as duplicate
    matched_fact_id: Optional[str] = None
    similarity: Optional[float] = None
    superseded_fact_ids: list[str] = field(default_factory=list)


@dataclass
class ConflictGroup:
    """Non-deleted facts of one (contact, fact_type) that disagree."""
    contact_id: str
    fact_type: str
    facts: list[Fact]


def recheck_conflicts(conn: sqlite3.Connection, contact_id: str, fact_type: Optional[str]) -> bool:
    """
    Restore the conflict invariant for one (contact_id, fact_type) group.

    Returns:
        True if the group is now in conflict
    """
    if not fact_type:
        return False

    rows = conn.execute("""
        SELECT DISTINCT value FROM facts
        WHERE contact_id = ? AND fact_type = ? AND deleted_at IS NULL
    """, (contact_id, fact_type)).fetchall()
    in_conflict = len(rows) > 1

    conn.execute("""
        UPDATE facts SET has_conflict = ?
        WHERE contact_id = ? AND fact_type = ? AND deleted_at IS NULL
    """, (1 if in_conflict else 0, contact_id, fact_type))
    return in_conflict


def _dump_embedding(embedding: Optional[list[float]]) -> Optional[str]:
    return json.dumps(embedding) if embedding is not None else None


class FactStore:
    """
    SQLite-backed storage for contact facts.
    """

    def __init__(self, db_path: Optional[str] = None, embedding_service: Any = None):
        """
        Initialize fact store.

        Args:
            db_path: Path to crm.db (defaults to settings)
            embedding_service: Object with embed_text(str) -> list[float].
                When None, facts are stored without embeddings and dedup is
                skipped.
        """
        self.db_path = db_path or get_crm_db_path()
        self.embedding_service = embedding_service
        self._init_db()

    def _init_db(self):
        init_crm_db(self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    def _insert(self, conn: sqlite3.Connection, fact: Fact, embedding: Optional[list[float]]):
        conn.execute("""
            INSERT INTO facts
            (id, contact_id, category, fact_type, value, structured_value, source,
             source_communication_id, confidence, has_conflict, value_embedding,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
        """, (
            fact.id,
            fact.contact_id,
            fact.category,
            fact.fact_type,
            fact.value,
            json.dumps(fact.structured_value) if fact.structured_value else None,
            fact.source,
            fact.source_communication_id,
            fact.confidence,
            _dump_embedding(embedding),
            to_utc_iso(fact.created_at),
            to_utc_iso(fact.updated_at),
        ))

    def _fetch(self, conn: sqlite3.Connection, fact_id: str) -> Optional[Fact]:
        row = conn.execute("SELECT * FROM facts WHERE id = ?", (fact_id,)).fetchone()
        return Fact.from_row(row) if row else None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, fact_id: str) -> Optional[Fact]:
        """Get fact by ID (including soft-deleted)."""
        conn = self._get_connection()
        try:
            return self._fetch(conn, fact_id)
        finally:
            conn.close()

    def list_for_contact(
        self, contact_id: str, fact_type: Optional[str] = None, include_deleted: bool = False
    ) -> list[Fact]:
        """List a contact's facts ordered by type then creation time."""
        query = "SELECT * FROM facts WHERE contact_id = ?"
        params: list[Any] = [contact_id]
        if fact_type:
            query += " AND fact_type = ?"
            params.append(fact_type)
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY fact_type, created_at, id"

        conn = self._get_connection()
        try:
            return [Fact.from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def find_conflicts(self, contact_id: Optional[str] = None) -> list[ConflictGroup]:
        """Group conflicted facts by (contact_id, fact_type)."""
        query = "SELECT * FROM facts WHERE has_conflict = 1 AND deleted_at IS NULL"
        params: list[Any] = []
        if contact_id:
            query += " AND contact_id = ?"
            params.append(contact_id)
        query += " ORDER BY contact_id, fact_type, created_at, id"

        conn = self._get_connection()
        try:
            groups: dict[tuple[str, str], ConflictGroup] = {}
            for row in conn.execute(query, params).fetchall():
                fact = Fact.from_row(row)
                key = (fact.contact_id, fact.fact_type)
                if key not in groups:
                    groups[key] = ConflictGroup(fact.contact_id, fact.fact_type, [])
                groups[key].facts.append(fact)
            return list(groups.values())
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Manual CRUD
    # -------------------------------------------------------------------------

    def create_fact(
        self,
        contact_id: str,
        fact_type: str,
        value: str,
        structured_value: Optional[dict] = None,
    ) -> Fact:
        """Create a manually entered fact (confidence 1.0)."""
        fact_type = normalize_fact_type(fact_type)
        fact = Fact(
            contact_id=contact_id,
            category=category_for(fact_type),
            fact_type=fact_type,
            value=value,
            structured_value=structured_value,
            source="manual",
            confidence=1.0,
        )
        embedding = generate_fact_embedding(self.embedding_service, value)

        conn = self._get_connection()
        try:
            with transaction(conn):
                self._insert(conn, fact, embedding)
                fact.has_conflict = recheck_conflicts(conn, contact_id, fact_type)
            return fact
        finally:
            conn.close()

    def update_fact(
        self,
        fact_id: str,
        value: Optional[str] = None,
        fact_type: Optional[str] = None,
        structured_value: Optional[dict] = None,
    ) -> Fact:
        """
        Update a fact's value, type or structured value.

        Both the old and the new (contact, fact_type) groups are rechecked.

        Raises:
            NotFoundError: If the fact doesn't exist or is deleted
        """
        embedding = None
        if value is not None:
            embedding = generate_fact_embedding(self.embedding_service, value)

        conn = self._get_connection()
        try:
            with transaction(conn):
                existing = self._fetch(conn, fact_id)
                if existing is None or existing.deleted_at is not None:
                    raise NotFoundError(f"Fact not found: {fact_id}")

                new_type = normalize_fact_type(fact_type) if fact_type else existing.fact_type
                updates = ["updated_at = ?", "fact_type = ?", "category = ?"]
                params: list[Any] = [to_utc_iso(utc_now()), new_type, category_for(new_type)]
                if value is not None:
                    updates.append("value = ?")
                    params.append(value)
                    updates.append("value_embedding = ?")
                    params.append(_dump_embedding(embedding))
                if structured_value is not None:
                    updates.append("structured_value = ?")
                    params.append(json.dumps(structured_value))
                params.append(fact_id)
                conn.execute(f"UPDATE facts SET {', '.join(updates)} WHERE id = ?", params)

                if new_type != existing.fact_type:
                    recheck_conflicts(conn, existing.contact_id, existing.fact_type)
                recheck_conflicts(conn, existing.contact_id, new_type)
                return self._fetch(conn, fact_id)
        finally:
            conn.close()

    def delete_fact(self, fact_id: str) -> bool:
        """Soft-delete a fact and recheck its group."""
        conn = self._get_connection()
        try:
            with transaction(conn):
                existing = self._fetch(conn, fact_id)
                if existing is None or existing.deleted_at is not None:
                    return False
                now = to_utc_iso(utc_now())
                conn.execute(
                    "UPDATE facts SET deleted_at = ?, updated_at = ?, has_conflict = 0 WHERE id = ?",
                    (now, now, fact_id),
                )
                recheck_conflicts(conn, existing.contact_id, existing.fact_type)
                return True
        finally:
            conn.close()

    def resolve_conflict(
        self,
        fact_id: str,
        action: str,
        replace_with_fact_id: Optional[str] = None,
    ) -> Fact:
        """
        Resolve a conflict within a (contact, fact_type) group.

        Args:
            fact_id: The fact the action refers to
            action: "keep" (delete the other facts of the group), "replace"
                (delete this fact in favour of replace_with_fact_id) or
                "merge" (keep every value, clear the flag)
            replace_with_fact_id: Required for "replace"; must be in the same group

        Returns:
            The fact identified by fact_id after resolution

        Raises:
            NotFoundError: If fact_id (or the replacement) doesn't exist
            ValueError: On an unknown action or a replacement from another group
        """
        resolve_action = ResolveAction(action)

        conn = self._get_connection()
        try:
            with transaction(conn):
                fact = self._fetch(conn, fact_id)
                if fact is None or fact.deleted_at is not None:
                    raise NotFoundError(f"Fact not found: {fact_id}")

                now = to_utc_iso(utc_now())
                if resolve_action is ResolveAction.KEEP:
                    conn.execute("""
                        UPDATE facts SET deleted_at = ?, updated_at = ?, has_conflict = 0
                        WHERE contact_id = ? AND fact_type = ? AND id != ? AND deleted_at IS NULL
                    """, (now, now, fact.contact_id, fact.fact_type, fact_id))
                    recheck_conflicts(conn, fact.contact_id, fact.fact_type)

                elif resolve_action is ResolveAction.REPLACE:
                    if not replace_with_fact_id:
                        raise ValueError("replace requires replace_with_fact_id")
                    replacement = self._fetch(conn, replace_with_fact_id)
                    if replacement is None or replacement.deleted_at is not None:
                        raise NotFoundError(f"Fact not found: {replace_with_fact_id}")
                    if (replacement.contact_id, replacement.fact_type) != (fact.contact_id, fact.fact_type):
                        raise ValueError("Replacement fact belongs to a different group")
                    conn.execute(
                        "UPDATE facts SET deleted_at = ?, updated_at = ?, has_conflict = 0 WHERE id = ?",
                        (now, now, fact_id),
                    )
                    recheck_conflicts(conn, fact.contact_id, fact.fact_type)

                else:
                    conn.execute("""
                        UPDATE facts SET has_conflict = 0, updated_at = ?
                        WHERE contact_id = ? AND fact_type = ? AND deleted_at IS NULL
                    """, (now, fact.contact_id, fact.fact_type))

                logger.info(f"Resolved {fact.fact_type} conflict for {fact.contact_id}: {resolve_action.value}")
                return self._fetch(conn, fact_id)
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def create_extracted_fact(
        self,
        contact_id: str,
        fact_type: str,
        value: str,
        confidence: float,
        structured_value: Optional[dict] = None,
        source_communication_id: Optional[str] = None,
        dedup_similarity: float = 0.8,
        supersede_confidence: float = 0.9,
    ) -> FactCommitResult:
        """
        Commit one extracted fact through dedup and supersession.

        1. Embed the value (fail-open: no embedding means no dedup check).
        2. If the nearest same-type fact is at or above dedup_similarity,
           skip as a duplicate.
        3. For single-valued types with confidence >= supersede_confidence,
           soft-delete older extracted facts holding a different value.
        4. Insert and recheck the conflict invariant.

        Raises:
            PersistenceFailedError: If the database write fails
        """
        fact_type = normalize_fact_type(fact_type)
        embedding = generate_fact_embedding(self.embedding_service, value)

        conn = self._get_connection()
        try:
            with transaction(conn):
                matched = None
                if embedding is not None:
                    dedup = check_semantic_duplicate(
                        conn, contact_id, fact_type, embedding, dedup_similarity
                    )
                    matched = dedup.match
                    if dedup.is_duplicate:
                        return FactCommitResult(
                            outcome=FactCommitOutcome.SKIPPED_DUPLICATE,
                            matched_fact_id=dedup.match.fact_id,
                            similarity=dedup.match.similarity,
                        )

                superseded_ids: list[str] = []
                if fact_type in SINGLE_VALUED_FACT_TYPES and confidence >= supersede_confidence:
                    rows = conn.execute("""
                        SELECT id FROM facts
                        WHERE contact_id = ? AND fact_type = ? AND source = 'extracted'
                          AND value != ? AND deleted_at IS NULL
                    """, (contact_id, fact_type, value)).fetchall()
                    superseded_ids = [row["id"] for row in rows]
                    if superseded_ids:
                        now = to_utc_iso(utc_now())
                        placeholders = ",".join("?" for _ in superseded_ids)
                        conn.execute(
                            f"UPDATE facts SET deleted_at = ?, updated_at = ?, has_conflict = 0 "
                            f"WHERE id IN ({placeholders})",
                            [now, now, *superseded_ids],
                        )

                fact = Fact(
                    contact_id=contact_id,
                    category=category_for(fact_type),
                    fact_type=fact_type,
                    value=value,
                    structured_value=structured_value,
                    source="extracted",
                    source_communication_id=source_communication_id,
                    confidence=confidence,
                )
                self._insert(conn, fact, embedding)
                fact.has_conflict = recheck_conflicts(conn, contact_id, fact_type)
        except sqlite3.Error as e:
            raise PersistenceFailedError("fact", str(e)) from e
        finally:
            conn.close()

        if superseded_ids:
            logger.info(
                f"Extracted {fact_type} for {contact_id} superseded {len(superseded_ids)} older value(s)"
            )
            return FactCommitResult(
                outcome=FactCommitOutcome.SUPERSEDED,
                fact=fact,
                superseded_fact_ids=superseded_ids,
            )
        return FactCommitResult(
            outcome=FactCommitOutcome.INSERTED,
            fact=fact,
            matched_fact_id=matched.fact_id if matched else None,
            similarity=matched.similarity if matched else None,
        )


# Singleton instance
_fact_store: Optional[FactStore] = None


def get_fact_store(db_path: Optional[str] = None) -> FactStore:
    """Get or create the singleton FactStore (with the shared embedding service)."""
    global _fact_store
    if _fact_store is None:
        from pkb.services.embeddings import get_embedding_service
        _fact_store = FactStore(db_path, embedding_service=get_embedding_service())
    return _fact_store
