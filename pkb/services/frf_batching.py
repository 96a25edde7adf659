"""
Batching for the FRF (fact / relationship / followup) pipeline.

A contact's unprocessed communications are cut into windows of batch_size,
oldest first. Every window after the first also repeats the last `overlap`
messages of the previous window so the extractor sees the conversation
leading into it. Repeated messages are context only: each communication id
appears in exactly one batch's communication_ids, so the ids across all
batches partition the unprocessed list.

A fixed set of already-processed messages (the most recent context_count)
is attached to every batch as read-only background.
"""
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Optional

from pkb.services.communication_store import Communication
from pkb.services.resilience import ContactFailedError
from pkb.utils.datetime_utils import make_aware

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "=== CONTEXT ONLY - Do not extract facts from these messages ==="
NEW_MESSAGES_HEADER = "=== NEW MESSAGES - Extract facts from these messages ==="


@dataclass
class ContactBatch:
    """One extraction window for a contact."""
    contact_id: str
    contact_name: str
    context_messages: list[Communication] = field(default_factory=list)
    batch_messages: list[Communication] = field(default_factory=list)
    communication_ids: list[str] = field(default_factory=list)

    @property
    def new_messages(self) -> list[Communication]:
        """The batch messages this batch owns (overlap prefix excluded)."""
        ids = set(self.communication_ids)
        return [m for m in self.batch_messages if m.id in ids]

    @property
    def latest_new_message(self) -> Optional[Communication]:
        new = self.new_messages
        return new[-1] if new else None


def split_into_batches(
    messages: list[Communication],
    batch_size: int,
    overlap: int,
    contact_id: Optional[str] = None,
    contact_name: Optional[str] = None,
) -> list[ContactBatch]:
    """
    Split ordered messages into overlapping batches.

    Args:
        messages: Unprocessed messages, oldest first
        batch_size: New messages per batch (>= 1)
        overlap: Trailing messages of the previous batch repeated as context
        contact_id: Owner (defaults to the first message's contact)
        contact_name: Display name (defaults to the first message's)

    Returns:
        Batches in chronological order; empty for empty input
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    if overlap < 0:
        raise ValueError(f"overlap must be >= 0, got {overlap}")
    if not messages:
        return []

    contact_id = contact_id or messages[0].contact_id
    contact_name = contact_name or messages[0].contact_name
    batches: list[ContactBatch] = []

    start = 0
    while start < len(messages):
        end = min(start + batch_size, len(messages))
        overlap_start = start if not batches else max(0, start - overlap)
        batches.append(ContactBatch(
            contact_id=contact_id,
            contact_name=contact_name,
            batch_messages=list(messages[overlap_start:end]),
            communication_ids=[m.id for m in messages[start:end]],
        ))
        start = end

    return batches


def get_contact_batches(
    store,
    contact_id: str,
    batch_size: int = 15,
    overlap: int = 2,
    context_count: int = 5,
    min_content_length: int = 20,
    contact_name: Optional[str] = None,
) -> list[ContactBatch]:
    """
    Build all batches for one contact.

    Args:
        store: CommunicationStore (or anything with the same read methods)
        contact_id: Contact to batch
        batch_size: New messages per batch
        overlap: Messages repeated from the previous batch
        context_count: Already-processed messages attached to every batch
        min_content_length: Shorter communications are ignored
        contact_name: Display name override

    Returns:
        Batches in chronological order

    Raises:
        ContactFailedError: If reading the contact's communications fails
    """
    try:
        unprocessed = store.get_unprocessed_communications(contact_id, min_content_length)
        if not unprocessed:
            return []
        context_messages = store.get_context_communications(
            contact_id, context_count, min_content_length
        )
    except sqlite3.Error as e:
        raise ContactFailedError(contact_id, str(e)) from e

    batches = split_into_batches(
        unprocessed, batch_size, overlap, contact_id=contact_id, contact_name=contact_name
    )
    for batch in batches:
        batch.context_messages = context_messages

    logger.debug(
        f"Contact {contact_id}: {len(unprocessed)} unprocessed -> {len(batches)} batch(es), "
        f"{len(context_messages)} context message(s)"
    )
    return batches


def format_message(msg: Communication) -> str:
    """Render one message as "[YYYY-MM-DD HH:MM | SOURCE | RECEIVED] text"."""
    ts = make_aware(msg.timestamp).strftime("%Y-%m-%d %H:%M") if msg.timestamp else "unknown"
    direction = "RECEIVED" if msg.direction == "inbound" else "SENT"
    prefix = f"[{ts} | {msg.source.upper()} | {direction}]"
    if msg.subject:
        return f"{prefix} Subject: {msg.subject}\n{msg.content}"
    return f"{prefix} {msg.content}"


def format_batch_prompt(batch: ContactBatch) -> str:
    """
    Render a batch as an extraction transcript.

    Context messages (if any) come first under a header telling the extractor
    not to extract from them, then the batch messages.
    """
    sections: list[str] = []

    if batch.context_messages:
        sections.append(CONTEXT_HEADER)
        sections.append("")
        sections.extend(format_message(m) for m in batch.context_messages)
        sections.append("")

    sections.append(NEW_MESSAGES_HEADER)
    sections.append("")
    sections.extend(format_message(m) for m in batch.batch_messages)

    return "\n".join(sections)
