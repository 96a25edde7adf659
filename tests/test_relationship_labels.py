"""
Tests for the relationship label table.
"""
import pytest

from config.relationship_labels import (
    INVERSE_LABELS,
    NO_INVERSE_LABELS,
    RELATIONSHIP_LABELS,
    inverse_label,
    normalize_label,
    validate_label_table,
)

pytestmark = pytest.mark.unit


def test_label_table_is_consistent():
    assert validate_label_table() == []


@pytest.mark.parametrize("label", sorted(INVERSE_LABELS))
def test_inverse_of_inverse_is_identity(label):
    assert inverse_label(inverse_label(label)) == label


def test_every_label_declared():
    assert RELATIONSHIP_LABELS == set(INVERSE_LABELS) | NO_INVERSE_LABELS


def test_asymmetric_pairs():
    assert inverse_label("parent") == "child"
    assert inverse_label("boss") == "direct_report"
    assert inverse_label("Direct Report") == "boss"


def test_no_inverse():
    assert inverse_label("how_we_met") is None
    assert inverse_label("fishing_buddy") is None


def test_normalize_label():
    assert normalize_label("  Direct-Report ") == "direct_report"
    assert normalize_label("Mutual   Connection") == "mutual_connection"
