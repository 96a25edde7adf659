"""
SQLite schema and connection helpers for the PKB CRM database.

All CRM stores share one crm.db file. Each store calls init_crm_db() from its
_init_db() so any store can be constructed first.

Timestamps are UTC ISO-8601 strings (see pkb.utils.datetime_utils) so that
ORDER BY on the text column is chronological.
"""
import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)

CRM_SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    display_name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS communications (
    id TEXT PRIMARY KEY,
    contact_id TEXT REFERENCES contacts(id),
    content TEXT NOT NULL,
    source TEXT NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('inbound', 'outbound')),
    subject TEXT,
    timestamp TEXT NOT NULL,
    frf_processed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_communications_frf_unprocessed
    ON communications(contact_id, timestamp) WHERE frf_processed_at IS NULL;

CREATE INDEX IF NOT EXISTS idx_communications_contact_time
    ON communications(contact_id, timestamp);

CREATE TABLE IF NOT EXISTS facts (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id),
    category TEXT NOT NULL,
    fact_type TEXT NOT NULL,
    value TEXT NOT NULL,
    structured_value TEXT,
    source TEXT NOT NULL CHECK (source IN ('manual', 'extracted')),
    source_communication_id TEXT,
    confidence REAL,
    has_conflict INTEGER NOT NULL DEFAULT 0,
    value_embedding TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_facts_contact_type
    ON facts(contact_id, fact_type) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS relationships (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id),
    label TEXT NOT NULL,
    person_name TEXT NOT NULL,
    linked_contact_id TEXT REFERENCES contacts(id),
    source TEXT NOT NULL CHECK (source IN ('manual', 'extracted')),
    source_communication_id TEXT,
    confidence REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_relationships_unique_active
    ON relationships(contact_id, lower(label), lower(person_name))
    WHERE deleted_at IS NULL;

CREATE INDEX IF NOT EXISTS idx_relationships_linked
    ON relationships(linked_contact_id) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS followups (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id),
    type TEXT NOT NULL CHECK (type IN ('content_detected', 'time_based', 'manual')),
    reason TEXT NOT NULL,
    due_date TEXT NOT NULL,
    source_communication_id TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    created_at TEXT NOT NULL
);

DROP INDEX IF EXISTS idx_followups_open;

CREATE UNIQUE INDEX IF NOT EXISTS idx_followups_open_reason
    ON followups(contact_id, reason) WHERE completed = 0;
"""

_initialized_paths: set[str] = set()


def get_connection(db_path: str) -> sqlite3.Connection:
    """Open a connection with Row access and a busy timeout."""
    conn = sqlite3.connect(db_path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    return conn


def init_crm_db(db_path: str) -> None:
    """Create CRM tables and indexes if they don't exist."""
    if db_path in _initialized_paths:
        return
    conn = get_connection(db_path)
    try:
        conn.executescript(CRM_SCHEMA)
        conn.commit()
        _initialized_paths.add(db_path)
        logger.info(f"Initialized CRM schema in {db_path}")
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run a block inside BEGIN IMMEDIATE ... COMMIT.

    The write lock is taken up front so read-check-write sequences (dedup,
    duplicate-reason checks, reciprocal upserts) can't interleave with another
    writer. Rolls back and re-raises on any exception.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
