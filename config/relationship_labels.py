"""
Relationship Label Configuration.

Central table of relationship labels and their inverses, used to maintain
reciprocal relationship rows when a relationship is linked to another contact.

A label maps to the label the linked contact holds back toward the owner:
if Alice's relationship "parent" points at Bob, Bob gets a "child" row
pointing at Alice. Self-inverse labels map to themselves.

Edit this file to add labels. Every label in RELATIONSHIP_LABELS must appear
either in INVERSE_LABELS or in NO_INVERSE_LABELS (enforced by
validate_label_table() and the test suite).
"""

# =============================================================================
# ALLOWED LABELS
# =============================================================================

# Labels produced by extraction and accepted by manual entry
RELATIONSHIP_LABELS = frozenset({
    "spouse",
    "partner",
    "parent",
    "child",
    "sibling",
    "grandparent",
    "grandchild",
    "friend",
    "colleague",
    "boss",
    "direct_report",
    "mentor",
    "mentee",
    "teacher",
    "student",
    "mutual_connection",
    "how_we_met",
})

# =============================================================================
# INVERSES
# =============================================================================

INVERSE_LABELS = {
    # Asymmetric pairs (both directions listed)
    "parent": "child",
    "child": "parent",
    "grandparent": "grandchild",
    "grandchild": "grandparent",
    "boss": "direct_report",
    "direct_report": "boss",
    "mentor": "mentee",
    "mentee": "mentor",
    "teacher": "student",
    "student": "teacher",

    # Self-inverse
    "spouse": "spouse",
    "partner": "partner",
    "sibling": "sibling",
    "friend": "friend",
    "colleague": "colleague",
    "mutual_connection": "mutual_connection",
}

# Labels that describe the owner's history, not a two-sided tie
NO_INVERSE_LABELS = frozenset({
    "how_we_met",
})


def normalize_label(label: str) -> str:
    """Lowercase and snake-case a label ("Direct Report" -> "direct_report")."""
    return "_".join(label.strip().lower().replace("-", " ").split())


def inverse_label(label: str):
    """
    Return the inverse of a label, or None.

    Unknown labels and labels in NO_INVERSE_LABELS have no inverse.
    """
    return INVERSE_LABELS.get(normalize_label(label))


def validate_label_table() -> list[str]:
    """
    Check that the inverse table covers every allowed label.

    Returns:
        List of problems (empty when the table is consistent)
    """
    problems = []
    for label in sorted(RELATIONSHIP_LABELS):
        in_inverse = label in INVERSE_LABELS
        in_none = label in NO_INVERSE_LABELS
        if in_inverse and in_none:
            problems.append(f"{label}: listed both with and without an inverse")
        elif not in_inverse and not in_none:
            problems.append(f"{label}: no inverse declared")
    for label, inverse in INVERSE_LABELS.items():
        if label not in RELATIONSHIP_LABELS:
            problems.append(f"{label}: inverse declared for unknown label")
        if INVERSE_LABELS.get(inverse) != label:
            problems.append(f"{label}: inverse {inverse} does not map back")
    return problems
