"""Fixed vocabularies for generated collaboration proposals.

Model output is matched against the synonyms case-insensitively and stored
under the canonical name.
"""

COLLABORATION_TYPE_TAXONOMY = [
    {
        "canonical_type": "mechanistic extension",
        "synonyms": ["mechanistic extension", "mechanistic", "mechanism extension"],
        "description": "One lab's finding is pushed into mechanism using the other lab's systems or assays",
    },
    {
        "canonical_type": "methodological enhancement",
        "synonyms": ["methodological enhancement", "methodological", "method enhancement", "technical enhancement"],
        "description": "A technique or platform from one lab unlocks a question the other lab cannot answer today",
    },
    {
        "canonical_type": "translational application",
        "synonyms": ["translational application", "translational", "clinical application"],
        "description": "Basic findings are carried toward disease models, patient samples or therapeutics",
    },
]

COLLABORATION_TYPES = frozenset(entry["canonical_type"] for entry in COLLABORATION_TYPE_TAXONOMY)

_SYNONYM_MAP = {
    synonym.lower(): entry["canonical_type"]
    for entry in COLLABORATION_TYPE_TAXONOMY
    for synonym in entry["synonyms"]
}

CONFIDENCE_TIERS = ("high", "moderate", "speculative")


def normalize_collaboration_type(value: str) -> str | None:
    """Canonical collaboration type for a model-supplied label, or None if unknown."""
    key = " ".join(value.replace("_", " ").replace("-", " ").lower().split())
    return _SYNONYM_MAP.get(key)
