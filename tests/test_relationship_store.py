"""
Tests for RelationshipStore and reciprocal inference.
"""
import pytest

from pkb.services.resilience import NotFoundError

pytestmark = pytest.mark.unit


@pytest.fixture
def alice(communication_store):
    return communication_store.add_contact("Alice Smith")


@pytest.fixture
def bob(communication_store):
    return communication_store.add_contact("Bob Smith")


@pytest.fixture
def carol(communication_store):
    return communication_store.add_contact("Carol Jones")


class TestCreateRelationship:
    """Tests for create_relationship() and reciprocal creation."""

    def test_unlinked_relationship_has_no_reciprocal(self, relationship_store, alice):
        rel = relationship_store.create_relationship(alice.id, "friend", "Dana")

        assert rel.source == "manual"
        assert rel.linked_contact_id is None
        assert [r.id for r in relationship_store.list_for_contact(alice.id)] == [rel.id]

    def test_linked_creates_inverse(self, relationship_store, alice, bob):
        relationship_store.create_relationship(alice.id, "parent", "Bob Smith", linked_contact_id=bob.id)

        reciprocals = relationship_store.list_for_contact(bob.id)
        assert len(reciprocals) == 1
        assert reciprocals[0].label == "child"
        assert reciprocals[0].person_name == "Alice Smith"
        assert reciprocals[0].linked_contact_id == alice.id

    def test_self_inverse_label(self, relationship_store, alice, bob):
        relationship_store.create_relationship(alice.id, "Spouse", "Bob Smith", linked_contact_id=bob.id)
        reciprocals = relationship_store.list_for_contact(bob.id)
        assert [r.label for r in reciprocals] == ["spouse"]

    def test_label_without_inverse(self, relationship_store, alice, bob):
        relationship_store.create_relationship(alice.id, "how_we_met", "Bob Smith", linked_contact_id=bob.id)
        assert relationship_store.list_for_contact(bob.id) == []

    def test_unknown_label_kept_without_inverse(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(
            alice.id, "Fishing Buddy", "Bob Smith", linked_contact_id=bob.id
        )
        assert rel.label == "fishing_buddy"
        assert relationship_store.list_for_contact(bob.id) == []

    def test_self_link_has_no_reciprocal(self, relationship_store, alice):
        relationship_store.create_relationship(alice.id, "friend", "Alice Smith", linked_contact_id=alice.id)
        assert len(relationship_store.list_for_contact(alice.id)) == 1

    def test_existing_unlinked_row_is_relinked(self, relationship_store, alice, bob):
        extracted = relationship_store.create_extracted_relationship(bob.id, "child", "alice smith", 0.8)

        relationship_store.create_relationship(alice.id, "parent", "Bob Smith", linked_contact_id=bob.id)

        rows = relationship_store.list_for_contact(bob.id)
        assert [r.id for r in rows] == [extracted.id]
        assert rows[0].linked_contact_id == alice.id

    def test_reciprocal_from_either_side(self, relationship_store, alice, bob):
        relationship_store.create_relationship(bob.id, "child", "Alice Smith", linked_contact_id=alice.id)

        rows = relationship_store.list_for_contact(alice.id)
        assert [(r.label, r.person_name, r.linked_contact_id) for r in rows] == [
            ("parent", "Bob Smith", bob.id)
        ]

    def test_relink_existing_reciprocal_not_duplicated(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(alice.id, "parent", "Bob Smith", linked_contact_id=bob.id)
        relationship_store.update_relationship(rel.id, linked_contact_id=bob.id)

        assert len(relationship_store.list_for_contact(bob.id)) == 1


class TestDeleteRelationship:
    """Tests for delete_relationship()."""

    def test_delete_removes_reciprocal(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(alice.id, "parent", "Bob Smith", linked_contact_id=bob.id)
        reciprocal = relationship_store.list_for_contact(bob.id)[0]

        assert relationship_store.delete_relationship(rel.id) is True

        assert relationship_store.list_for_contact(alice.id) == []
        assert relationship_store.list_for_contact(bob.id) == []
        assert relationship_store.get(reciprocal.id).deleted_at is not None

    def test_delete_reciprocal_side_removes_original(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(alice.id, "parent", "Bob Smith", linked_contact_id=bob.id)
        reciprocal = relationship_store.list_for_contact(bob.id)[0]

        relationship_store.delete_relationship(reciprocal.id)

        assert relationship_store.get(rel.id).deleted_at is not None

    def test_delete_missing(self, relationship_store):
        assert relationship_store.delete_relationship("missing") is False

    def test_delete_twice(self, relationship_store, alice):
        rel = relationship_store.create_relationship(alice.id, "friend", "Dana")
        assert relationship_store.delete_relationship(rel.id) is True
        assert relationship_store.delete_relationship(rel.id) is False

    def test_recreate_after_delete(self, relationship_store, alice):
        rel = relationship_store.create_relationship(alice.id, "friend", "Dana")
        relationship_store.delete_relationship(rel.id)
        again = relationship_store.create_relationship(alice.id, "friend", "Dana")
        assert [r.id for r in relationship_store.list_for_contact(alice.id)] == [again.id]


class TestUpdateRelationship:
    """Tests for update_relationship()."""

    def test_link_creates_reciprocal(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(alice.id, "sibling", "Bob Smith")

        relationship_store.update_relationship(rel.id, linked_contact_id=bob.id)

        reciprocals = relationship_store.list_for_contact(bob.id)
        assert [(r.label, r.linked_contact_id) for r in reciprocals] == [("sibling", alice.id)]

    def test_unlink_soft_deletes_reciprocal(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(alice.id, "sibling", "Bob Smith", linked_contact_id=bob.id)

        updated = relationship_store.update_relationship(rel.id, linked_contact_id=None)

        assert updated.linked_contact_id is None
        assert relationship_store.list_for_contact(bob.id) == []
        assert len(relationship_store.list_for_contact(alice.id)) == 1

    def test_relink_moves_reciprocal(self, relationship_store, alice, bob, carol):
        rel = relationship_store.create_relationship(alice.id, "boss", "Bob Smith", linked_contact_id=bob.id)

        relationship_store.update_relationship(rel.id, person_name="Carol Jones", linked_contact_id=carol.id)

        assert relationship_store.list_for_contact(bob.id) == []
        moved = relationship_store.list_for_contact(carol.id)
        assert [(r.label, r.person_name) for r in moved] == [("direct_report", "Alice Smith")]

    def test_label_change_replaces_reciprocal(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(alice.id, "mentor", "Bob Smith", linked_contact_id=bob.id)

        relationship_store.update_relationship(rel.id, label="teacher")

        assert [r.label for r in relationship_store.list_for_contact(bob.id)] == ["student"]

    def test_name_only_change_keeps_reciprocal(self, relationship_store, alice, bob):
        rel = relationship_store.create_relationship(alice.id, "friend", "Bob", linked_contact_id=bob.id)
        before = relationship_store.list_for_contact(bob.id)[0]

        relationship_store.update_relationship(rel.id, person_name="Bob Smith")

        after = relationship_store.list_for_contact(bob.id)
        assert [r.id for r in after] == [before.id]

    def test_update_missing(self, relationship_store):
        with pytest.raises(NotFoundError):
            relationship_store.update_relationship("missing", label="friend")


class TestCreateExtractedRelationship:
    """Tests for create_extracted_relationship()."""

    def test_insert(self, relationship_store, alice):
        rel = relationship_store.create_extracted_relationship(alice.id, "sibling", "Jamie", 0.85, "comm-1")

        assert rel is not None
        assert rel.source == "extracted"
        assert rel.confidence == 0.85
        assert relationship_store.get(rel.id).source_communication_id == "comm-1"

    def test_duplicate_is_case_insensitive(self, relationship_store, alice):
        relationship_store.create_extracted_relationship(alice.id, "sibling", "Jamie", 0.85)

        assert relationship_store.create_extracted_relationship(alice.id, "Sibling", "JAMIE", 0.9) is None
        assert len(relationship_store.list_for_contact(alice.id)) == 1

    def test_duplicate_of_manual_row(self, relationship_store, alice):
        relationship_store.create_relationship(alice.id, "friend", "Dana")
        assert relationship_store.create_extracted_relationship(alice.id, "friend", "dana", 0.9) is None

    def test_different_person_is_new(self, relationship_store, alice):
        relationship_store.create_extracted_relationship(alice.id, "sibling", "Jamie", 0.85)
        assert relationship_store.create_extracted_relationship(alice.id, "sibling", "Riley", 0.85) is not None

    def test_deleted_row_does_not_block(self, relationship_store, alice):
        rel = relationship_store.create_extracted_relationship(alice.id, "sibling", "Jamie", 0.85)
        relationship_store.delete_relationship(rel.id)
        assert relationship_store.create_extracted_relationship(alice.id, "sibling", "Jamie", 0.85) is not None
