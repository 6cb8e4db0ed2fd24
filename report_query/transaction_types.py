"""
Canonical transaction types and their free-text surface forms.

Queries name transaction types loosely ("create order", "CREATEORDER",
"refund in").  This module maps those variants onto the canonical codes used
in the report's ``transactionType`` field.
"""

import re
from types import MappingProxyType
from typing import Mapping, Optional, Pattern, Set, Tuple

KNOWN_TRANSACTION_TYPES: Tuple[str, ...] = (
    "TRANS_IN",
    "TRANS_OUT",
    "REFUND_TRANS_IN",
    "REFUND_TRANS_OUT",
    "CHANGE_ORDER",
    "CREATE_ORDER",
    "FULFILLED_SALE",
)

TYPE_VARIATIONS: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    "CREATE_ORDER": ("CREATE ORDER", "CREATE_ORDER", "CREATEORDER", "CREATE"),
    "CHANGE_ORDER": ("CHANGE ORDER", "CHANGE_ORDER", "CHANGEORDER", "CHANGE"),
    "TRANS_IN": ("TRANS IN", "TRANS_IN", "TRANSIN", "TRANSACTION IN"),
    "TRANS_OUT": ("TRANS OUT", "TRANS_OUT", "TRANSOUT", "TRANSACTION OUT"),
    "REFUND_TRANS_IN": ("REFUND TRANS IN", "REFUND_TRANS_IN", "REFUND IN"),
    "REFUND_TRANS_OUT": ("REFUND TRANS OUT", "REFUND_TRANS_OUT", "REFUND OUT"),
    "FULFILLED_SALE": ("FULFILLED SALE", "FULFILLED_SALE", "FULFILLEDSALE"),
})


def _variant_pattern(variant: str) -> Pattern[str]:
    # "\b" counts "_" as a word character, so "CREATE" never matches inside
    # "RECREATE" or "CREATE_ORDER" inside "RECREATE_ORDER_LOG".
    body = r"\s+".join(re.escape(part) for part in variant.split())
    return re.compile(rf"\b{body}\b", re.IGNORECASE)


_VARIANT_PATTERNS: Tuple[Tuple[str, Tuple[Pattern[str], ...]], ...] = tuple(
    (canonical, tuple(_variant_pattern(v) for v in variants))
    for canonical, variants in TYPE_VARIATIONS.items()
)


def normalize(token: str) -> Optional[str]:
    """Map a single surface form onto its canonical type, or ``None``.

    ``"create order"`` → ``"CREATE_ORDER"``, ``"refund in"`` →
    ``"REFUND_TRANS_IN"``, ``"shipment"`` → ``None``.
    """
    if not token:
        return None
    words = token.upper().split()
    if not words:
        return None

    underscored = "_".join(words)
    if underscored in KNOWN_TRANSACTION_TYPES:
        return underscored

    spaced = " ".join(words)
    for canonical, variants in TYPE_VARIATIONS.items():
        if spaced in variants:
            return canonical
    return None


def extract_types_from_query(query: str) -> Set[str]:
    """Return every canonical type mentioned anywhere in *query*."""
    found: Set[str] = set()
    if not query:
        return found
    for canonical, patterns in _VARIANT_PATTERNS:
        if any(p.search(query) for p in patterns):
            found.add(canonical)
    return found


def filter_known_types(candidates) -> Set[str]:
    """Normalise *candidates* and drop anything that is not a known type."""
    known: Set[str] = set()
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        canonical = normalize(candidate)
        if canonical is not None:
            known.add(canonical)
    return known
