"""
FRF (fact / relationship / followup) extraction pipeline.

One run:
1. List contacts with unprocessed communications
2. For each contact (sequentially): build overlapping batches
3. For each batch (sequentially): format a transcript, call the extractor,
   commit facts, relationships and followups, then mark the batch's
   communications processed
4. Return a PipelineResult summary

Single-flight: a run holds a non-blocking lock for its whole duration. A run
requested while another is in progress returns PipelineResult(skipped=True)
immediately, without touching the database.

Failure isolation (smallest enclosing scope wins):
- RateLimitedError on any extraction call: abort the whole run, return the
  partial summary
- Other extraction failure: retry the batch once; if it fails again, count
  one error and leave its communications unmarked for the next run
- A single fact/relationship/followup failing to commit: count one error,
  keep going; the batch is still marked processed
- Batching a contact fails: count one error, skip the contact
- Listing contacts fails: count one error, return the summary

run() never raises.
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from config.settings import settings
from pkb.services.fact_store import FactCommitOutcome
from pkb.services.followup_store import FollowupOutcome
from pkb.services.frf_batching import ContactBatch, format_batch_prompt, get_contact_batches
from pkb.services.frf_extraction import ExtractionResult
from pkb.services.resilience import RateLimitedError, RetryConfig, retry_sync

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FRFPipelineConfig:
    """Externally supplied pipeline configuration."""
    batch_size: int = 15
    batch_overlap: int = 2
    context_messages: int = 5
    confidence_threshold: float = 0.75
    dedup_similarity_threshold: float = 0.80
    supersede_confidence: float = 0.90
    followup_cutoff_days: int = 90
    inter_batch_delay_ms: int = 300
    retry_delay_ms: int = 1000
    min_content_length: int = 20

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.batch_overlap < 0 or self.context_messages < 0:
            raise ValueError("batch_overlap and context_messages must be >= 0")
        for name in ("confidence_threshold", "dedup_similarity_threshold", "supersede_confidence"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1")

    @classmethod
    def from_settings(cls) -> "FRFPipelineConfig":
        return cls(
            batch_size=settings.frf_batch_size,
            batch_overlap=settings.frf_batch_overlap,
            context_messages=settings.frf_context_messages,
            confidence_threshold=settings.frf_confidence_threshold,
            dedup_similarity_threshold=settings.frf_dedup_similarity,
            supersede_confidence=settings.frf_supersede_confidence,
            followup_cutoff_days=settings.frf_followup_cutoff_days,
            inter_batch_delay_ms=settings.frf_batch_delay_ms,
            retry_delay_ms=settings.frf_retry_delay_ms,
            min_content_length=settings.frf_min_content_length,
        )


@dataclass
class PipelineResult:
    """Summary of one pipeline run. Returned and logged, never persisted."""
    skipped: bool = False
    aborted_rate_limited: bool = False
    contacts_processed: int = 0
    batches_processed: int = 0
    facts_created: int = 0
    facts_deduplicated: int = 0
    facts_superseded: int = 0
    relationships_created: int = 0
    followups_created: int = 0
    followups_skipped_cutoff: int = 0
    followups_skipped_duplicate: int = 0
    errors: int = 0
    duration_ms: int = 0

    def record_fact(self, outcome: FactCommitOutcome):
        if outcome is FactCommitOutcome.INSERTED:
            self.facts_created += 1
        elif outcome is FactCommitOutcome.SKIPPED_DUPLICATE:
            self.facts_deduplicated += 1
        elif outcome is FactCommitOutcome.SUPERSEDED:
            self.facts_superseded += 1
        else:
            raise ValueError(f"Unhandled fact outcome: {outcome}")

    def record_followup(self, outcome: FollowupOutcome):
        if outcome is FollowupOutcome.CREATED:
            self.followups_created += 1
        elif outcome is FollowupOutcome.SKIPPED_CUTOFF:
            self.followups_skipped_cutoff += 1
        elif outcome is FollowupOutcome.SKIPPED_DUPLICATE:
            self.followups_skipped_duplicate += 1
        else:
            raise ValueError(f"Unhandled followup outcome: {outcome}")

    def to_dict(self) -> dict:
        return asdict(self)


class _RunAborted(Exception):
    """Internal: stop the run after a rate-limit refusal."""


class FRFPipeline:
    """
    Orchestrates FRF extraction runs.

    Collaborators are injected so tests can substitute fakes; defaults are the
    module singletons.
    """

    def __init__(
        self,
        config: Optional[FRFPipelineConfig] = None,
        communication_store: Any = None,
        extractor: Any = None,
        fact_store: Any = None,
        relationship_store: Any = None,
        followup_store: Any = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        self.config = config or FRFPipelineConfig.from_settings()
        self._communication_store = communication_store
        self._extractor = extractor
        self._fact_store = fact_store
        self._relationship_store = relationship_store
        self._followup_store = followup_store
        self._sleep = sleep
        self._lock = threading.Lock()
        self.last_result: Optional[PipelineResult] = None
        self._retry_config = RetryConfig(
            max_retries=1,
            base_delay=self.config.retry_delay_ms / 1000,
            max_delay=self.config.retry_delay_ms / 1000,
            retryable_exceptions=(Exception,),
            abort_exceptions=(RateLimitedError,),
        )

    # Collaborators are resolved lazily so constructing a pipeline is cheap

    @property
    def communication_store(self):
        if self._communication_store is None:
            from pkb.services.communication_store import get_communication_store
            self._communication_store = get_communication_store()
        return self._communication_store

    @property
    def extractor(self):
        if self._extractor is None:
            from pkb.services.frf_extraction import FRFExtractor
            self._extractor = FRFExtractor(confidence_threshold=self.config.confidence_threshold)
        return self._extractor

    @property
    def fact_store(self):
        if self._fact_store is None:
            from pkb.services.fact_store import get_fact_store
            self._fact_store = get_fact_store()
        return self._fact_store

    @property
    def relationship_store(self):
        if self._relationship_store is None:
            from pkb.services.relationship_store import get_relationship_store
            self._relationship_store = get_relationship_store()
        return self._relationship_store

    @property
    def followup_store(self):
        if self._followup_store is None:
            from pkb.services.followup_store import get_followup_store
            self._followup_store = get_followup_store()
        return self._followup_store

    def is_running(self) -> bool:
        return self._lock.locked()

    def run(self) -> PipelineResult:
        """
        Run the pipeline once.

        Returns:
            PipelineResult; skipped=True if another run was in progress
        """
        if not self._lock.acquire(blocking=False):
            logger.info("FRF pipeline already running, skipping")
            return PipelineResult(skipped=True)

        start = time.monotonic()
        result = PipelineResult()
        try:
            self._run(result)
        except _RunAborted:
            result.aborted_rate_limited = True
        except Exception as e:
            logger.error(f"FRF pipeline failed: {e}")
            result.errors += 1
        finally:
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self.last_result = result
            self._lock.release()
            logger.info(f"FRF pipeline completed: {result.to_dict()}")
        return result

    def _run(self, result: PipelineResult):
        if not self.extractor.is_available():
            logger.info("FRF pipeline: extraction not available (AI disabled or no API key)")
            return

        contacts = self.communication_store.get_unprocessed_contacts(self.config.min_content_length)
        if not contacts:
            logger.debug("FRF pipeline: no unprocessed communications")
            return

        total = sum(c.unprocessed_count for c in contacts)
        logger.info(f"FRF pipeline started: {len(contacts)} contacts, {total} unprocessed communications")

        first_batch = True
        for contact in contacts:
            try:
                batches = get_contact_batches(
                    self.communication_store,
                    contact.contact_id,
                    batch_size=self.config.batch_size,
                    overlap=self.config.batch_overlap,
                    context_count=self.config.context_messages,
                    min_content_length=self.config.min_content_length,
                    contact_name=contact.contact_name,
                )
                for batch in batches:
                    if not first_batch and self.config.inter_batch_delay_ms > 0:
                        self._sleep(self.config.inter_batch_delay_ms / 1000)
                    first_batch = False
                    self._process_batch(batch, result)
            except _RunAborted:
                raise
            except Exception as e:
                logger.error(f"Failed to process contact {contact.contact_id}, skipping: {e}")
                result.errors += 1
                continue

            result.contacts_processed += 1
            logger.info(f"FRF pipeline: processed {contact.contact_name} ({len(batches)} batches)")

    def _extract(self, batch: ContactBatch) -> ExtractionResult:
        transcript = format_batch_prompt(batch)
        return self.extractor.extract_from_batch(transcript, batch.contact_name)

    def _process_batch(self, batch: ContactBatch, result: PipelineResult):
        """
        Extract and commit one batch.

        Raises:
            _RunAborted: On a rate-limit refusal (first attempt or retry)
        """
        extract = retry_sync(self._retry_config, sleep=self._sleep)(self._extract)
        try:
            extraction = extract(batch)
        except RateLimitedError as e:
            logger.warning(f"FRF pipeline rate limited on {batch.contact_id}, stopping run: {e}")
            result.errors += 1
            raise _RunAborted() from e
        except Exception as e:
            logger.error(
                f"Batch for {batch.contact_id} failed after retry, leaving "
                f"{len(batch.communication_ids)} communications for next run: {e}"
            )
            result.errors += 1
            return

        self._commit_extraction(batch, extraction, result)

        try:
            self.communication_store.mark_processed(batch.communication_ids)
        except Exception as e:
            logger.error(f"Failed to mark batch processed for {batch.contact_id}: {e}")
            result.errors += 1
            return
        result.batches_processed += 1

    def _commit_extraction(self, batch: ContactBatch, extraction: ExtractionResult, result: PipelineResult):
        """Commit every extracted item, isolating failures per item."""
        source = batch.latest_new_message
        source_id = source.id if source else None
        source_timestamp = source.timestamp if source else None

        for fact in extraction.facts:
            try:
                commit = self.fact_store.create_extracted_fact(
                    contact_id=batch.contact_id,
                    fact_type=fact.fact_type,
                    value=fact.value,
                    confidence=fact.confidence,
                    structured_value=fact.structured_value,
                    source_communication_id=source_id,
                    dedup_similarity=self.config.dedup_similarity_threshold,
                    supersede_confidence=self.config.supersede_confidence,
                )
                result.record_fact(commit.outcome)
            except Exception as e:
                logger.error(f"Failed to create fact {fact.fact_type} for {batch.contact_id}: {e}")
                result.errors += 1

        for rel in extraction.relationships:
            try:
                created = self.relationship_store.create_extracted_relationship(
                    contact_id=batch.contact_id,
                    label=rel.label,
                    person_name=rel.person_name,
                    confidence=rel.confidence,
                    source_communication_id=source_id,
                )
                if created is not None:
                    result.relationships_created += 1
            except Exception as e:
                logger.error(f"Failed to create relationship {rel.label} for {batch.contact_id}: {e}")
                result.errors += 1

        for followup in extraction.followups:
            try:
                gate = self.followup_store.create_content_detected_followup(
                    contact_id=batch.contact_id,
                    source_communication_id=source_id,
                    reason=followup.reason,
                    suggested_date=followup.suggested_date,
                    communication_timestamp=source_timestamp,
                    cutoff_days=self.config.followup_cutoff_days,
                )
                result.record_followup(gate.outcome)
            except Exception as e:
                logger.error(f"Failed to create followup for {batch.contact_id}: {e}")
                result.errors += 1


# Singleton instance
_frf_pipeline: Optional[FRFPipeline] = None


def get_frf_pipeline() -> FRFPipeline:
    """Get or create the singleton FRFPipeline."""
    global _frf_pipeline
    if _frf_pipeline is None:
        _frf_pipeline = FRFPipeline()
    return _frf_pipeline


def run_frf_pipeline() -> PipelineResult:
    """Run the singleton pipeline once (skipped if already running)."""
    return get_frf_pipeline().run()


def is_pipeline_running() -> bool:
    return _frf_pipeline is not None and _frf_pipeline.is_running()


def reset_frf_pipeline() -> None:
    """Reset the pipeline singleton. For testing only."""
    global _frf_pipeline
    _frf_pipeline = None
