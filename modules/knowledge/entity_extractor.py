"""
modules/knowledge/entity_extractor.py

Lightweight, dependency-free entity extraction.

LexicalEntityExtractor rules:
    1. Runs of capitalized words (first word longer than 2 chars) merge into
       one candidate. Type by heuristics, first match wins:
           organization word (Company, Corp, Inc, ...)  -> ORG
           place word (City, Street, Road, ...)         -> LOC
           single all-caps acronym (EAAS, NASA)         -> ORG
           1-3 words and longer than 3 chars            -> PERSON
           otherwise                                    -> MISC
    2. Product keywords (tour, package, service, product, experience,
       optional plural) -> PRODUCT, lowercased
    3. Relative days, weekdays, months and d/m/y numerics -> DATE, lowercased
    Results are deduplicated by (type, value).

Any object with extract(text) -> List[Entity] can replace it in the
ingestion pipeline.
"""

import re
import unicodedata
from typing import Dict, List, Protocol

from models.schemas import Entity, EntityType

_NON_WORD = re.compile(r"[^\w\s]")
_CAPITALIZED = re.compile(r"^[A-ZÀ-Ü]")
_ACRONYM = re.compile(r"^[A-Z][A-Z0-9]+$")
_ORG_WORDS = re.compile(r"\b(Company|Corp|Inc|Ltd|Group|Bank|Agency)\b", re.IGNORECASE)
_LOC_WORDS = re.compile(r"\b(City|Country|Street|Avenue|Road)\b", re.IGNORECASE)

PRODUCT_KEYWORDS = ("tour", "package", "service", "product", "experience")
_PRODUCT_PATTERNS = [re.compile(rf"\b({kw}s?)\b", re.IGNORECASE) for kw in PRODUCT_KEYWORDS]

_DATE_PATTERNS = [
    re.compile(r"\b(today|tomorrow|yesterday)\b", re.IGNORECASE),
    re.compile(r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b", re.IGNORECASE),
    re.compile(
        r"\b(january|february|march|april|may|june|july|august|"
        r"september|october|november|december)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(\d{1,2}/\d{1,2}/\d{2,4})\b"),
]


class EntityExtractor(Protocol):
    def extract(self, text: str) -> List[Entity]:
        ...


def _classify(value: str) -> EntityType:
    if _ORG_WORDS.search(value):
        return EntityType.ORG
    if _LOC_WORDS.search(value):
        return EntityType.LOC
    words = value.split(" ")
    if len(words) == 1 and _ACRONYM.match(value):
        return EntityType.ORG
    if len(words) <= 3 and len(value) > 3:
        return EntityType.PERSON
    return EntityType.MISC


class LexicalEntityExtractor:
    """Rule-based extractor; cheap, deterministic and noisy."""

    def extract(self, text: str) -> List[Entity]:
        nfkc = unicodedata.normalize("NFKC", text or "")
        normalized = _NON_WORD.sub(" ", nfkc).strip()
        words = normalized.split()

        found: List[Entity] = []

        i = 0
        while i < len(words):
            word = words[i]
            if len(word) > 2 and _CAPITALIZED.match(word):
                j = i + 1
                while j < len(words) and _CAPITALIZED.match(words[j]):
                    j += 1
                value = " ".join(words[i:j])
                found.append(Entity(_classify(value), value))
                i = j
                continue
            i += 1

        for pattern in _PRODUCT_PATTERNS:
            for match in pattern.findall(normalized):
                found.append(Entity(EntityType.PRODUCT, match.lower()))

        # Dates are matched before punctuation stripping so d/m/y survives
        for pattern in _DATE_PATTERNS:
            for match in pattern.findall(nfkc):
                found.append(Entity(EntityType.DATE, match.lower()))

        seen = set()
        unique = []
        for entity in found:
            if entity.key not in seen:
                seen.add(entity.key)
                unique.append(entity)
        return unique


def entity_frequencies(text: str, entities: List[Entity]) -> Dict[str, int]:
    """
    Occurrences of each entity value in text (case-insensitive, whole words),
    at least 1 per extracted entity. Keyed by entity value.
    """
    counts: Dict[str, int] = {}
    haystack = unicodedata.normalize("NFKC", text or "")
    for entity in entities:
        pattern = re.compile(rf"(?<!\w){re.escape(entity.value)}(?!\w)", re.IGNORECASE)
        counts[entity.value] = max(counts.get(entity.value, 0), len(pattern.findall(haystack)), 1)
    return counts


# Module-level default extractor
ner_light = LexicalEntityExtractor()
