"""
Deduplication Utils
===================

Collapse related-party and category rows that only differ by casing or
surrounding whitespace. Pure functions; no data-store access.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from .schemas import CategoryOut, RelatedPartyOut

logger = logging.getLogger(__name__)


def normalize_text(value: Optional[str]) -> str:
    """Comparison form of a string: trimmed and lower-cased"""
    if not value:
        return ""
    return value.strip().lower()


def clean_text(value: Optional[str]) -> Optional[str]:
    """Output form of a string: trimmed, original casing kept"""
    if value is None:
        return None
    return value.strip()


def party_key(email: Optional[str], name: Optional[str]) -> Tuple[str, str]:
    return (normalize_text(email), normalize_text(name))


def dedupe_parties(rows: Iterable[Tuple[Optional[str], Optional[str]]]) -> List[RelatedPartyOut]:
    """
    Turn (email, name) rows into unique parties, first-seen order.

    Rows with a blank email are dropped.
    """
    seen = set()
    parties: List[RelatedPartyOut] = []
    duplicates = 0

    for email, name in rows:
        key = party_key(email, name)
        if not key[0]:
            continue
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        parties.append(RelatedPartyOut(email=clean_text(email), name=clean_text(name)))

    if duplicates:
        logger.debug(f"Dedup parties: {len(parties)} unique (removed {duplicates})")
    return parties


def dedupe_labels(labels: Iterable[Optional[str]]) -> List[CategoryOut]:
    """Unique, non-blank category labels in first-seen order"""
    seen = set()
    categories: List[CategoryOut] = []

    for label in labels:
        key = normalize_text(label)
        if not key or key in seen:
            continue
        seen.add(key)
        categories.append(CategoryOut(label=clean_text(label)))

    return categories
