"""
Tests for the FRF pipeline orchestrator.

Real SQLite stores under tmp_path, fake extractor and embeddings.

Covers:
- Happy path commit and processed marking
- Single-flight (concurrent run is skipped)
- Rate-limit abort, retry-then-skip, per-item and per-contact isolation
- Summary counters and inter-batch pacing
"""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from pkb.services.frf_batching import CONTEXT_HEADER, get_contact_batches
from pkb.services.frf_extraction import (
    ExtractedFact,
    ExtractedFollowup,
    ExtractedRelationship,
    ExtractionResult,
)
from pkb.services.frf_pipeline import FRFPipeline, FRFPipelineConfig, PipelineResult
from pkb.services.resilience import ExtractionFailedError, RateLimitedError

pytestmark = pytest.mark.unit


def _extraction(facts=(), relationships=(), followups=()):
    return ExtractionResult(
        facts=[ExtractedFact(fact_type=t, value=v, confidence=c) for t, v, c in facts],
        relationships=[ExtractedRelationship(label=l, person_name=n, confidence=c) for l, n, c in relationships],
        followups=[ExtractedFollowup(reason=r, suggested_date=d) for r, d in followups],
    )


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def make_pipeline(communication_store, fact_store, relationship_store, followup_store, sleep):
    """Build a pipeline wired to the tmp_path stores."""
    def _make(extractor, **config):
        return FRFPipeline(
            config=FRFPipelineConfig(**config),
            communication_store=communication_store,
            extractor=extractor,
            fact_store=fact_store,
            relationship_store=relationship_store,
            followup_store=followup_store,
            sleep=sleep,
        )
    return _make


@pytest.fixture
def alice(communication_store):
    return communication_store.add_contact("Alice Smith")


@pytest.fixture
def bob(communication_store):
    return communication_store.add_contact("Bob Jones")


class TestFRFPipelineConfig:
    def test_defaults(self):
        config = FRFPipelineConfig()
        assert config.batch_size == 15
        assert config.batch_overlap == 2
        assert config.followup_cutoff_days == 90

    @pytest.mark.parametrize("kwargs", [
        {"batch_size": 0},
        {"batch_overlap": -1},
        {"context_messages": -1},
        {"confidence_threshold": 1.5},
        {"dedup_similarity_threshold": -0.1},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            FRFPipelineConfig(**kwargs)


class TestHappyPath:
    """A clean run commits everything and marks the batch."""

    def test_commits_and_marks(
        self, make_pipeline, make_extractor, communication_store, fact_store,
        relationship_store, followup_store, alice, add_messages,
    ):
        messages = add_messages(alice.id, 3)
        extractor = make_extractor([_extraction(
            facts=[("company", "Acme", 0.9)],
            relationships=[("sibling", "Jamie", 0.85)],
            followups=[("Send the article", "2025-07-04")],
        )])

        result = make_pipeline(extractor).run()

        assert result.skipped is False
        assert result.contacts_processed == 1
        assert result.batches_processed == 1
        assert result.facts_created == 1
        assert result.relationships_created == 1
        assert result.followups_created == 1
        assert result.errors == 0

        assert communication_store.get_unprocessed_communications(alice.id) == []

        fact = fact_store.list_for_contact(alice.id)[0]
        assert fact.source == "extracted"
        assert fact.source_communication_id == messages[-1].id
        assert relationship_store.list_for_contact(alice.id)[0].person_name == "Jamie"
        assert followup_store.list_for_contact(alice.id)[0].source_communication_id == messages[-1].id

    def test_transcript_sent_to_extractor(self, make_pipeline, make_extractor, alice, add_messages):
        add_messages(alice.id, 2, prefix="Hello")
        extractor = make_extractor()

        make_pipeline(extractor).run()

        transcript, contact_name = extractor.calls[0]
        assert contact_name == "Alice Smith"
        assert "Hello 1 with enough text" in transcript
        assert "Hello 2 with enough text" in transcript

    def test_empty_extraction_still_marks(self, make_pipeline, make_extractor, communication_store, alice, add_messages):
        add_messages(alice.id, 2)
        result = make_pipeline(make_extractor()).run()

        assert result.batches_processed == 1
        assert communication_store.get_unprocessed_communications(alice.id) == []

    def test_nothing_to_do(self, make_pipeline, make_extractor):
        extractor = make_extractor()
        result = make_pipeline(extractor).run()
        assert result.to_dict() == {**PipelineResult().to_dict(), "duration_ms": result.duration_ms}
        assert extractor.calls == []

    def test_second_run_is_noop(self, make_pipeline, make_extractor, alice, add_messages):
        add_messages(alice.id, 4)
        extractor = make_extractor()
        pipeline = make_pipeline(extractor)

        pipeline.run()
        second = pipeline.run()

        assert len(extractor.calls) == 1
        assert second.batches_processed == 0

    def test_processed_messages_become_context(self, make_pipeline, make_extractor, alice, add_messages):
        add_messages(alice.id, 3, prefix="Earlier")
        extractor = make_extractor()
        pipeline = make_pipeline(extractor)
        pipeline.run()

        add_messages(alice.id, 2, start=datetime.now(timezone.utc), prefix="Later")
        pipeline.run()

        transcript = extractor.calls[1][0]
        assert CONTEXT_HEADER in transcript
        assert transcript.index("Earlier 3") < transcript.index("Later 1")

    def test_extraction_unavailable(self, make_pipeline, make_extractor, communication_store, alice, add_messages):
        add_messages(alice.id, 2)
        extractor = make_extractor(available=False)

        result = make_pipeline(extractor).run()

        assert result.batches_processed == 0
        assert result.errors == 0
        assert extractor.calls == []
        assert len(communication_store.get_unprocessed_communications(alice.id)) == 2


class TestCounters:
    """Outcome counters in the summary."""

    def test_dedup_counted(self, make_pipeline, make_extractor, alice, add_messages):
        add_messages(alice.id, 4)
        same = _extraction(facts=[("location", "Boston", 0.8)])
        extractor = make_extractor([same, _extraction(facts=[("location", "Boston", 0.8)])])

        result = make_pipeline(extractor, batch_size=2, batch_overlap=0).run()

        assert result.batches_processed == 2
        assert result.facts_created == 1
        assert result.facts_deduplicated == 1

    def test_supersede_counted(self, make_pipeline, make_extractor, fact_store, alice, add_messages):
        add_messages(alice.id, 4)
        extractor = make_extractor([
            _extraction(facts=[("company", "Acme", 0.8)]),
            _extraction(facts=[("company", "Globex", 0.95)]),
        ])

        result = make_pipeline(extractor, batch_size=2, batch_overlap=0).run()

        assert result.facts_created == 1
        assert result.facts_superseded == 1
        assert [f.value for f in fact_store.list_for_contact(alice.id)] == ["Globex"]

    def test_existing_relationship_not_counted(self, make_pipeline, make_extractor, alice, add_messages):
        add_messages(alice.id, 4)
        rel = _extraction(relationships=[("friend", "Dana", 0.9)])
        extractor = make_extractor([rel, _extraction(relationships=[("friend", "dana", 0.9)])])

        result = make_pipeline(extractor, batch_size=2, batch_overlap=0).run()

        assert result.relationships_created == 1

    def test_followup_outcomes(self, make_pipeline, make_extractor, alice, add_messages):
        add_messages(alice.id, 2)
        extractor = make_extractor([_extraction(followups=[("Call back", None), ("Call back", None)])])

        result = make_pipeline(extractor).run()

        assert result.followups_created == 1
        assert result.followups_skipped_duplicate == 1

    def test_old_communications_skip_followups(self, make_pipeline, make_extractor, followup_store, alice, add_messages):
        add_messages(alice.id, 2, start=datetime.now(timezone.utc) - timedelta(days=120))
        extractor = make_extractor([_extraction(followups=[("Call back", None)])])

        result = make_pipeline(extractor).run()

        assert result.followups_skipped_cutoff == 1
        assert result.followups_created == 0
        assert followup_store.list_for_contact(alice.id) == []


class TestFailureIsolation:
    """Each failure is contained to the smallest enclosing scope."""

    def test_rate_limit_aborts_run(self, make_pipeline, make_extractor, communication_store, alice, bob, add_messages):
        add_messages(alice.id, 5)
        add_messages(bob.id, 2)
        extractor = make_extractor([RateLimitedError("429 Too Many Requests")])

        with patch(
            "pkb.services.frf_pipeline.get_contact_batches", wraps=get_contact_batches
        ) as batches_spy:
            result = make_pipeline(extractor).run()

        assert result.aborted_rate_limited is True
        assert result.errors == 1
        assert result.contacts_processed == 0
        assert result.batches_processed == 0
        assert len(extractor.calls) == 1
        assert [c.args[1] for c in batches_spy.call_args_list] == [alice.id]
        assert len(communication_store.get_unprocessed_communications(alice.id)) == 5
        assert len(communication_store.get_unprocessed_communications(bob.id)) == 2

    def test_rate_limit_is_not_retried(self, make_pipeline, make_extractor, sleep, alice, add_messages):
        add_messages(alice.id, 2)
        extractor = make_extractor([RateLimitedError("quota")])

        make_pipeline(extractor).run()

        assert len(extractor.calls) == 1
        sleep.assert_not_called()

    def test_rate_limit_on_retry_aborts(self, make_pipeline, make_extractor, alice, bob, add_messages):
        add_messages(alice.id, 3)
        add_messages(bob.id, 2)
        extractor = make_extractor([ExtractionFailedError("timeout"), RateLimitedError("quota")])

        result = make_pipeline(extractor).run()

        assert result.aborted_rate_limited is True
        assert len(extractor.calls) == 2

    def test_rate_limit_keeps_earlier_batches(self, make_pipeline, make_extractor, communication_store, alice, add_messages):
        messages = add_messages(alice.id, 4)
        extractor = make_extractor([_extraction(facts=[("company", "Acme", 0.9)]), RateLimitedError("quota")])

        result = make_pipeline(extractor, batch_size=2, batch_overlap=0).run()

        assert result.batches_processed == 1
        assert result.facts_created == 1
        remaining = communication_store.get_unprocessed_communications(alice.id)
        assert [c.id for c in remaining] == [m.id for m in messages[2:]]

    def test_retry_once_then_succeed(self, make_pipeline, make_extractor, sleep, alice, add_messages):
        add_messages(alice.id, 2)
        extractor = make_extractor([ExtractionFailedError("timeout"), _extraction(facts=[("company", "Acme", 0.9)])])

        result = make_pipeline(extractor, retry_delay_ms=1000).run()

        assert len(extractor.calls) == 2
        assert result.errors == 0
        assert result.facts_created == 1
        sleep.assert_called_once_with(1.0)

    def test_retry_exhausted_leaves_batch_unmarked(
        self, make_pipeline, make_extractor, communication_store, alice, bob, add_messages,
    ):
        add_messages(alice.id, 3)
        add_messages(bob.id, 2)
        extractor = make_extractor([
            ExtractionFailedError("timeout"),
            ExtractionFailedError("timeout again"),
            _extraction(),
        ])

        result = make_pipeline(extractor).run()

        assert result.errors == 1
        assert result.aborted_rate_limited is False
        assert result.contacts_processed == 2
        assert result.batches_processed == 1
        assert len(communication_store.get_unprocessed_communications(alice.id)) == 3
        assert communication_store.get_unprocessed_communications(bob.id) == []

    def test_item_failure_still_marks_batch(
        self, make_pipeline, make_extractor, communication_store, relationship_store, alice, add_messages,
    ):
        add_messages(alice.id, 2)
        extractor = make_extractor([_extraction(
            facts=[("company", "Acme", 0.9)],
            relationships=[("sibling", "Jamie", 0.85)],
        )])
        pipeline = make_pipeline(extractor)
        pipeline._fact_store = MagicMock()
        pipeline._fact_store.create_extracted_fact.side_effect = RuntimeError("disk I/O error")

        result = pipeline.run()

        assert result.errors == 1
        assert result.facts_created == 0
        assert result.relationships_created == 1
        assert result.batches_processed == 1
        assert communication_store.get_unprocessed_communications(alice.id) == []

    def test_contact_failure_skips_contact(
        self, make_pipeline, make_extractor, communication_store, alice, bob, add_messages,
    ):
        add_messages(alice.id, 3)
        add_messages(bob.id, 2)

        def flaky_batches(store, contact_id, **kwargs):
            if contact_id == alice.id:
                raise RuntimeError("database is locked")
            return get_contact_batches(store, contact_id, **kwargs)

        with patch("pkb.services.frf_pipeline.get_contact_batches", side_effect=flaky_batches):
            result = make_pipeline(make_extractor()).run()

        assert result.errors == 1
        assert result.contacts_processed == 1
        assert len(communication_store.get_unprocessed_communications(alice.id)) == 3
        assert communication_store.get_unprocessed_communications(bob.id) == []

    def test_failure_between_batches_skips_only_that_contact(
        self, make_pipeline, make_extractor, communication_store, sleep, alice, bob, add_messages,
    ):
        messages = add_messages(alice.id, 4)
        add_messages(bob.id, 2)
        # First pacing call is before Alice's second batch, second is before Bob's
        sleep.side_effect = [RuntimeError("clock went backwards"), None]

        result = make_pipeline(make_extractor(), batch_size=2, batch_overlap=0).run()

        assert result.aborted_rate_limited is False
        assert result.errors == 1
        assert result.contacts_processed == 1
        assert result.batches_processed == 2
        remaining = communication_store.get_unprocessed_communications(alice.id)
        assert [c.id for c in remaining] == [m.id for m in messages[2:]]
        assert communication_store.get_unprocessed_communications(bob.id) == []

    def test_listing_failure_returns_summary(self, make_pipeline, make_extractor):
        pipeline = make_pipeline(make_extractor())
        pipeline._communication_store = MagicMock()
        pipeline._communication_store.get_unprocessed_contacts.side_effect = RuntimeError("no such table")

        result = pipeline.run()

        assert result.errors == 1
        assert result.skipped is False
        assert pipeline.is_running() is False

    def test_mark_processed_failure_counted(self, make_pipeline, make_extractor, communication_store, alice, add_messages):
        add_messages(alice.id, 2)
        pipeline = make_pipeline(make_extractor())

        with patch.object(communication_store, "mark_processed", side_effect=RuntimeError("locked")):
            result = pipeline.run()

        assert result.errors == 1
        assert result.batches_processed == 0
        assert len(communication_store.get_unprocessed_communications(alice.id)) == 2


class TestSingleFlight:
    """Only one run at a time."""

    def test_concurrent_run_is_skipped(self, make_pipeline, communication_store, alice, add_messages):
        add_messages(alice.id, 2)
        entered = threading.Event()
        release = threading.Event()

        class BlockingExtractor:
            def is_available(self):
                return True

            def extract_from_batch(self, transcript, contact_name):
                entered.set()
                release.wait(5)
                return ExtractionResult()

        pipeline = make_pipeline(BlockingExtractor())
        results = []
        worker = threading.Thread(target=lambda: results.append(pipeline.run()))
        worker.start()
        try:
            assert entered.wait(5)
            assert pipeline.is_running() is True

            second = pipeline.run()

            assert second.skipped is True
            assert second.batches_processed == 0
        finally:
            release.set()
            worker.join(5)

        assert results[0].skipped is False
        assert results[0].batches_processed == 1
        assert pipeline.is_running() is False

    def test_lock_released_after_run(self, make_pipeline, make_extractor):
        pipeline = make_pipeline(make_extractor())
        pipeline.run()
        assert pipeline.run().skipped is False


class TestPacing:
    def test_delay_between_batches_not_before_first(self, make_pipeline, make_extractor, sleep, alice, bob, add_messages):
        add_messages(alice.id, 4)
        add_messages(bob.id, 2)

        result = make_pipeline(
            make_extractor(), batch_size=2, batch_overlap=0, inter_batch_delay_ms=300
        ).run()

        assert result.batches_processed == 3
        assert sleep.call_count == 2
        assert all(c.args == (0.3,) for c in sleep.call_args_list)

    def test_zero_delay(self, make_pipeline, make_extractor, sleep, alice, add_messages):
        add_messages(alice.id, 4)
        make_pipeline(make_extractor(), batch_size=2, batch_overlap=0, inter_batch_delay_ms=0).run()
        sleep.assert_not_called()
