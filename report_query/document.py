"""
Best-effort access to the transaction report layout.

Readers here return ``None`` when any segment of a path is missing; they
never raise on an oddly shaped document.
"""

import math
from typing import Any, Dict, Iterable, List, Optional

TRANSACTION_ROOT = (
    "InfinityReportResponse",
    "infinityTransactionReport",
    "infinityTransactionReport",
)
TRANSACTION_ROOT_PATH = ".".join(TRANSACTION_ROOT)

# transactionPayload → transactionPayload → attributes → transactionDetails
DETAILS_PATH = (
    "transactionPayload",
    "transactionPayload",
    "attributes",
    "transactionDetails",
)

MISSING_SECTION_MESSAGE = "No transaction data found in InfinityReportResponse"


def dig(node: Any, *keys: str) -> Optional[Any]:
    """Follow *keys* through nested objects; ``None`` if any step is missing."""
    current = node
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
        if current is None:
            return None
    return current


def as_list(value: Any) -> List[Any]:
    """Repeated XML elements arrive as a list, single ones as a bare value."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def first_object(value: Any) -> Dict[str, Any]:
    """First element of a list-or-object node, or ``{}``."""
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, dict) else {}


def get_transactions(document: Any) -> Optional[List[Dict[str, Any]]]:
    """Return the transaction list, or ``None`` when the root is absent.

    Non-object entries are kept as empty objects so that counts still
    reflect every transaction the report lists.
    """
    node = dig(document, *TRANSACTION_ROOT)
    if node is None:
        return None
    return [txn if isinstance(txn, dict) else {} for txn in as_list(node)]


def transaction_details(txn: Dict[str, Any]) -> Dict[str, Any]:
    details = dig(txn, *DETAILS_PATH)
    return details if isinstance(details, dict) else {}


def present(value: Any) -> bool:
    return value is not None and value != ""


def to_number(value: Any) -> Optional[float]:
    """Numeric value of a leaf (XML numbers usually arrive as strings)."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def canonical_type(value: Any) -> Optional[str]:
    if not present(value):
        return None
    return str(value).strip().upper()


def unique(values: Iterable[Any]) -> List[Any]:
    """Distinct values in first-seen order."""
    seen: List[Any] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen
