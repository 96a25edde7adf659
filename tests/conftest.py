"""
Pytest configuration and shared fixtures for PKB tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- slow: Tests loading sentence-transformers models
- integration: Tests requiring external APIs (Anthropic)

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not slow"        # Skip slow tests
- pytest                      # All tests

Every store fixture points at a fresh crm.db under tmp_path. The embedding
service and the extraction client are replaced by deterministic fakes.
"""
import hashlib
import math
import re
from datetime import datetime, timedelta, timezone

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "slow: Slow tests (embedding models)")
    config.addinivalue_line("markers", "integration: Integration tests (external APIs)")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests whose names say they hit real services."""
    for item in items:
        if "integration" in item.name or "real_" in item.name:
            item.add_marker(pytest.mark.integration)


class FakeEmbeddingService:
    """
    Deterministic bag-of-words embeddings.

    Identical texts embed identically (similarity 1.0); texts with no words in
    common are (almost always) orthogonal.
    """

    DIMENSIONS = 256

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def embed_text(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding model unavailable")
        vector = [0.0] * self.DIMENSIONS
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.DIMENSIONS
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]


class FakeExtractor:
    """
    Stand-in for FRFExtractor.

    `responses` is consumed one item per call: an ExtractionResult is
    returned, an exception is raised. When exhausted, empty results are
    returned.
    """

    def __init__(self, responses=None, available: bool = True):
        self.responses = list(responses or [])
        self.available = available
        self.calls = []

    def is_available(self) -> bool:
        return self.available

    def extract_from_batch(self, transcript: str, contact_name: str):
        from pkb.services.frf_extraction import ExtractionResult

        self.calls.append((transcript, contact_name))
        if not self.responses:
            return ExtractionResult()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def crm_db_path(tmp_path):
    """Path to a fresh crm.db."""
    return str(tmp_path / "crm.db")


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddingService()


@pytest.fixture
def communication_store(crm_db_path):
    from pkb.services.communication_store import CommunicationStore
    return CommunicationStore(db_path=crm_db_path)


@pytest.fixture
def fact_store(crm_db_path, fake_embeddings):
    from pkb.services.fact_store import FactStore
    return FactStore(db_path=crm_db_path, embedding_service=fake_embeddings)


@pytest.fixture
def relationship_store(crm_db_path):
    from pkb.services.relationship_store import RelationshipStore
    return RelationshipStore(db_path=crm_db_path)


@pytest.fixture
def followup_store(crm_db_path):
    from pkb.services.followup_store import FollowupStore
    return FollowupStore(db_path=crm_db_path)


@pytest.fixture
def make_extractor():
    """Factory for FakeExtractor instances."""
    return FakeExtractor


@pytest.fixture
def add_messages(communication_store):
    """
    Add n communications for a contact, one minute apart, oldest first.

    Returns the created Communication objects in chronological order.
    """
    def _add(contact_id, n, start=None, prefix="Message number", processed=False):
        start = start or datetime.now(timezone.utc) - timedelta(days=1)
        created = []
        for i in range(n):
            created.append(communication_store.add_communication(
                contact_id=contact_id,
                content=f"{prefix} {i + 1} with enough text to be batched",
                source="imessage",
                direction="inbound" if i % 2 == 0 else "outbound",
                timestamp=start + timedelta(minutes=i),
            ))
        if processed:
            communication_store.mark_processed([c.id for c in created])
        return created
    return _add


@pytest.fixture(autouse=True)
def reset_singletons_after_test():
    """Reset module singletons so state doesn't leak between tests."""
    yield
    from tests.reset_singletons import reset_all_singletons
    reset_all_singletons()
