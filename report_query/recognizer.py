"""
Intent recognition: free text → ``Classification``.

Two tiers, cheapest first:

1. Rule tier (``recognize``) — keyword matching against the immutable
   pattern catalogue.  Payment keywords are checked first, then order-total
   keywords or an explicit transaction type, then the general pattern table
   in declaration order.  No match yields ``UNKNOWN`` routed to the AI
   fallback handler.
2. LLM tier (``recognize_enhanced``) — consulted only when the rule tier's
   confidence does not exceed the threshold.  The reply is accepted only if
   it parses to a known intent with a confidence in [0, 1]; otherwise the
   rule-tier result stands.

Neither function raises.
"""

from typing import Optional

from report_query.config import LLM_CONFIDENCE_THRESHOLD
from report_query.errors import LLMUnavailable
from report_query.llm_client import LLMCollaborator, extract_json
from report_query.logger import logger
from report_query.models import Classification
from report_query.patterns import (
    FALLBACK_DESCRIPTION,
    FALLBACK_HANDLER,
    HANDLER_BY_INTENT,
    ORDER_TOTAL_KEYWORDS,
    PATTERNS_BY_INTENT,
    PAYMENT_KEYWORDS,
    QUERY_PATTERNS,
    Intent,
)
from report_query.transaction_types import KNOWN_TRANSACTION_TYPES


def _mentions_transaction_type(normalized: str) -> bool:
    # "create_order" or "create order"
    return any(
        t.lower() in normalized or t.lower().replace("_", " ") in normalized
        for t in KNOWN_TRANSACTION_TYPES
    )


def recognize(query: str) -> Classification:
    """Classify *query* with the keyword rules."""
    normalized = " ".join((query or "").lower().split())

    # ---- Priority tier: payment ----
    if any(k in normalized for k in PAYMENT_KEYWORDS):
        return Classification(
            type=Intent.PAYMENT_DETAILS.value,
            handler=HANDLER_BY_INTENT[Intent.PAYMENT_DETAILS],
            confidence=1.0,
            description="Get payment details filtered by transaction type if applicable",
        )

    # ---- Priority tier: order total / transaction type ----
    if any(k in normalized for k in ORDER_TOTAL_KEYWORDS) or _mentions_transaction_type(normalized):
        return Classification(
            type=Intent.ORDER_TOTAL_BY_TXN_TYPE.value,
            handler=HANDLER_BY_INTENT[Intent.ORDER_TOTAL_BY_TXN_TYPE],
            confidence=1.0,
            description=PATTERNS_BY_INTENT[Intent.ORDER_TOTAL_BY_TXN_TYPE].description,
        )

    # ---- General pattern table ----
    for pattern in QUERY_PATTERNS:
        match_count = sum(1 for k in pattern.keywords if k in normalized)
        if match_count > 0:
            return Classification(
                type=pattern.intent.value,
                handler=pattern.handler,
                confidence=match_count / len(pattern.keywords),
                description=pattern.description,
            )

    return Classification(
        type=Intent.UNKNOWN.value,
        handler=FALLBACK_HANDLER,
        confidence=0.0,
        description=FALLBACK_DESCRIPTION,
    )


def _classification_from_reply(raw_text: str) -> Optional[Classification]:
    reply = extract_json(raw_text)
    if reply is None:
        logger.warning("[RECOGNIZE] Could not extract JSON from classifier reply: %s", raw_text[:300])
        return None

    try:
        intent = Intent(str(reply.get("type", "")).strip().upper())
    except ValueError:
        logger.warning("[RECOGNIZE] Classifier returned unknown type: %s", reply.get("type"))
        return None

    confidence = reply.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        logger.warning("[RECOGNIZE] Classifier confidence is not a number: %r", confidence)
        return None
    if not 0.0 <= confidence <= 1.0:
        logger.warning("[RECOGNIZE] Classifier confidence out of range: %r", confidence)
        return None

    pattern = PATTERNS_BY_INTENT.get(intent)
    reasoning = reply.get("reasoning")
    return Classification(
        type=intent.value,
        # handler always comes from the registry, never from the reply
        handler=HANDLER_BY_INTENT[intent],
        confidence=float(confidence),
        description=pattern.description if pattern else FALLBACK_DESCRIPTION,
        reasoning=str(reasoning) if reasoning is not None else None,
        source="llm",
    )


async def recognize_enhanced(
    query: str,
    llm: Optional[LLMCollaborator],
    threshold: float = LLM_CONFIDENCE_THRESHOLD,
) -> Classification:
    """Rule tier first; ask the LLM classifier only below *threshold*."""
    rule_result = recognize(query)
    if rule_result.confidence > threshold or llm is None:
        return rule_result

    logger.info(
        "[RECOGNIZE] Rule tier confidence %.2f (%s) — consulting LLM classifier",
        rule_result.confidence, rule_result.type,
    )
    try:
        raw_text = await llm.classify(query, QUERY_PATTERNS)
    except LLMUnavailable as e:
        logger.warning("[RECOGNIZE] LLM classifier unavailable: %s — keeping rule result", e)
        return rule_result
    except Exception as e:
        logger.warning("[RECOGNIZE] LLM classifier error: %s — keeping rule result", e)
        return rule_result

    llm_result = _classification_from_reply(raw_text)
    if llm_result is None:
        return rule_result

    logger.info(
        "[RECOGNIZE] LLM classified as %s (confidence %.2f)",
        llm_result.type, llm_result.confidence,
    )
    return llm_result
