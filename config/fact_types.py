"""
Fact Type Configuration.

Catalogue of fact types the CRM stores, grouped into display categories.
Extraction output with an unknown fact_type is stored as "custom".
"""

# fact_type -> category
FACT_CATEGORIES = {
    "birthday": "basic_info",
    "location": "basic_info",
    "job_title": "basic_info",
    "company": "basic_info",
    "email": "basic_info",
    "phone": "basic_info",
    "spouse": "relationship",
    "child": "relationship",
    "parent": "relationship",
    "sibling": "relationship",
    "friend": "relationship",
    "colleague": "relationship",
    "how_we_met": "relationship",
    "mutual_connection": "relationship",
    "custom": "custom",
}

FACT_TYPES = frozenset(FACT_CATEGORIES)

# A person has one current value for these. A confident new extraction with a
# different value supersedes older extracted values instead of conflicting.
SINGLE_VALUED_FACT_TYPES = frozenset({
    "birthday",
    "location",
    "job_title",
    "company",
})


def normalize_fact_type(fact_type: str) -> str:
    """Lowercase a fact type and map unknown types to "custom"."""
    normalized = (fact_type or "").strip().lower()
    return normalized if normalized in FACT_TYPES else "custom"


def category_for(fact_type: str) -> str:
    return FACT_CATEGORIES.get(fact_type, "custom")
