"""
Intent catalogue: the closed set of query intents, their keyword patterns
and the extraction handler each one dispatches to.

Loaded once at import and never mutated.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Tuple


class Intent(str, Enum):
    SUM_LINE_TOTAL = "SUM_LINE_TOTAL"
    ITEM_LINE_TOTALS = "ITEM_LINE_TOTALS"
    ORDER_ATTRIBUTES = "ORDER_ATTRIBUTES"
    STORE_DETAILS = "STORE_DETAILS"
    MTL_STATUS = "MTL_STATUS"
    INTERNAL_STATUS = "INTERNAL_STATUS"
    INTERNAL_FAILED_REASON = "INTERNAL_FAILED_REASON"
    ORDER_TOTAL_BY_TXN_TYPE = "ORDER_TOTAL_BY_TXN_TYPE"
    PAYMENT_DETAILS = "PAYMENT_DETAILS"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class QueryPattern:
    intent: Intent
    keywords: Tuple[str, ...]
    description: str
    handler: str


# Declaration order is match order: the first pattern with any keyword hit wins.
QUERY_PATTERNS: Tuple[QueryPattern, ...] = (
    QueryPattern(
        Intent.SUM_LINE_TOTAL,
        ("line total", "sum", "add", "total of"),
        "Sum of all line totals",
        "sumLineTotals",
    ),
    QueryPattern(
        Intent.ITEM_LINE_TOTALS,
        ("item details", "line totals", "item and line total"),
        "Get itemId, primeLineNo, lineTotal, tax, discount for all line items",
        "getItemLineTotals",
    ),
    QueryPattern(
        Intent.ORDER_ATTRIBUTES,
        ("order attributes", "original invoice", "master invoice", "business date", "sales date"),
        "Get order attribute fields including invoice numbers, dates, and totals",
        "getOrderAttributes",
    ),
    QueryPattern(
        Intent.STORE_DETAILS,
        ("store details", "store info", "location number", "zippedinstore"),
        "Get store details including location number and zippedInStore",
        "getStoreDetails",
    ),
    QueryPattern(
        Intent.MTL_STATUS,
        ("mtl status", "transaction status", "status"),
        "Get MTL transaction status information",
        "getMTLStatus",
    ),
    QueryPattern(
        Intent.INTERNAL_STATUS,
        ("internal status", "internal state"),
        "Get internal status information",
        "getInternalStatus",
    ),
    QueryPattern(
        Intent.INTERNAL_FAILED_REASON,
        ("internal failed reason", "failed reason", "failure reason"),
        "Get internal failed reason information",
        "getInternalFailedReason",
    ),
    QueryPattern(
        Intent.ORDER_TOTAL_BY_TXN_TYPE,
        ("order total", "grand total", "total amount", "create order", "change order", "transaction type"),
        "Get grandTotal by transaction type",
        "getOrderTotalByTransactionType",
    ),
    QueryPattern(
        Intent.PAYMENT_DETAILS,
        ("payment details", "payment", "credit card", "payment status",
         "payment method", "payment info", "card details"),
        "Get payment details including credit card info, payment status, and request amount",
        "getPaymentDetails",
    ),
)

# Priority tier: checked before QUERY_PATTERNS and worth full confidence.
PAYMENT_KEYWORDS: Tuple[str, ...] = (
    "payment details", "payment", "credit card", "payment status",
    "payment method", "payment info", "card details",
)
ORDER_TOTAL_KEYWORDS: Tuple[str, ...] = ("order total", "grand total", "total amount")

FALLBACK_HANDLER = "fallbackQuery"
FALLBACK_DESCRIPTION = "Unknown query type - using AI fallback"

PATTERNS_BY_INTENT: Mapping[Intent, QueryPattern] = MappingProxyType(
    {p.intent: p for p in QUERY_PATTERNS}
)

HANDLER_BY_INTENT: Mapping[Intent, str] = MappingProxyType({
    **{p.intent: p.handler for p in QUERY_PATTERNS},
    Intent.UNKNOWN: FALLBACK_HANDLER,
})
