"""
Semantic dedup for extracted facts.

A new fact is compared against the stored embeddings of the contact's
non-deleted facts of the same type. The closest match at or above the
similarity threshold makes the new fact a duplicate.

Embedding failures are fail-open: generate_fact_embedding() returns None,
the caller skips the dedup check and still inserts the fact. An embedding
outage therefore produces possible duplicates, never lost facts.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from pkb.services.embeddings import cosine_similarity

logger = logging.getLogger(__name__)


@dataclass
class DedupMatch:
    """Closest existing fact for a candidate value."""
    fact_id: str
    value: str
    similarity: float


@dataclass
class DedupResult:
    is_duplicate: bool
    match: Optional[DedupMatch] = None


def generate_fact_embedding(embedding_service, value: str) -> Optional[list[float]]:
    """Embed a fact value, or return None if the embedding service fails."""
    if embedding_service is None:
        return None
    try:
        return embedding_service.embed_text(value)
    except Exception as e:
        logger.warning(f"Failed to generate fact embedding, skipping dedup: {e}")
        return None


def find_nearest_fact(
    conn: sqlite3.Connection,
    contact_id: str,
    fact_type: str,
    embedding: list[float],
) -> Optional[DedupMatch]:
    """
    Nearest-neighbour lookup scoped to (contact_id, fact_type).

    Only non-deleted facts with a stored embedding are candidates.
    """
    rows = conn.execute("""
        SELECT id, value, value_embedding FROM facts
        WHERE contact_id = ? AND fact_type = ?
          AND deleted_at IS NULL
          AND value_embedding IS NOT NULL
    """, (contact_id, fact_type)).fetchall()

    best: Optional[DedupMatch] = None
    for row in rows:
        try:
            stored = json.loads(row["value_embedding"])
        except (json.JSONDecodeError, TypeError):
            continue
        similarity = cosine_similarity(embedding, stored)
        if best is None or similarity > best.similarity:
            best = DedupMatch(fact_id=row["id"], value=row["value"], similarity=similarity)
    return best


def check_semantic_duplicate(
    conn: sqlite3.Connection,
    contact_id: str,
    fact_type: str,
    embedding: list[float],
    similarity_threshold: float,
) -> DedupResult:
    """Decide whether a candidate embedding duplicates an existing fact."""
    match = find_nearest_fact(conn, contact_id, fact_type, embedding)
    if match is not None and match.similarity >= similarity_threshold:
        logger.debug(
            f"Duplicate {fact_type} for {contact_id}: matches {match.fact_id} "
            f"({match.similarity:.3f})"
        )
        return DedupResult(is_duplicate=True, match=match)
    return DedupResult(is_duplicate=False, match=match)
