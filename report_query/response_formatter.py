"""
Response formatter: builds the final JSON response for the API.

Each envelope gets a one-line human-readable summary alongside the raw
results, so a client can show something useful without knowing every
query type's result shape.
"""

from typing import Any, Dict, List, Optional

from report_query.models import Classification, Envelope

LARGE_RESULT_THRESHOLD = 1_000


def _count(results: Any) -> int:
    return len(results) if isinstance(results, list) else 0


def _join(values: List[Any]) -> str:
    return ", ".join(str(v) for v in values) if values else "none"


def summarize(envelope: Envelope) -> str:
    """Generate a human-readable description of an envelope."""
    qt = envelope.queryType
    results = envelope.results
    meta = envelope.metadata

    if envelope.is_error:
        message = results.get("error") if isinstance(results, dict) else None
        return f"Query failed: {message or 'unknown error'}."

    if meta.get("error"):
        return f"{qt}: {meta['error']}."

    if meta.get("followUp"):
        return (
            f"Filtered {meta.get('baseCount', 0)} {qt} records down to "
            f"{meta.get('filteredCount', _count(results))} "
            f"using \"{meta.get('filterQuery', '')}\"."
        )

    if qt == "SUM_LINE_TOTAL":
        return f"Sum of {results.get('count', 0)} line totals is {results.get('sum', 0)}."

    if qt == "ORDER_TOTAL_BY_TXN_TYPE":
        scope = (
            f"transaction types {_join(meta.get('requestedTypes'))}"
            if meta.get("requestedTypes") else "all transaction types"
        )
        text = (
            f"Order total for {scope}: {meta.get('totalSum', 0)} "
            f"across {meta.get('matchedTransactions', 0)} transactions."
        )
        if meta.get("missingTypes"):
            text += f" Not in this report: {_join(meta['missingTypes'])}."
        return text

    if qt == "PAYMENT_DETAILS":
        text = (
            f"{meta.get('totalReturned', _count(results))} payment records "
            f"({meta.get('mode', 'showing all')}); "
            f"statuses: {_join(meta.get('uniquePaymentStatuses'))}."
        )
        skipped = meta.get("skippedTransactions") or []
        if skipped:
            text += f" {len(skipped)} transactions skipped."
        return text

    if qt == "FALLBACK_AI":
        fields = results.get("plan", {}).get("extract", []) if isinstance(results, dict) else []
        return f"AI fallback found {meta.get('totalMatches', 0)} values for {_join(fields)}."

    if qt in ("MTL_STATUS", "INTERNAL_STATUS"):
        statuses = sorted({
            str(r.get("internalStatus")) for r in results if isinstance(r, dict)
        })
        return f"{_count(results)} {qt} records; statuses: {_join(statuses)}."

    if qt == "INTERNAL_FAILED_REASON":
        return (
            f"{_count(results)} failed-reason records; "
            f"reasons: {_join(meta.get('uniqueReasons'))}."
        )

    return f"{_count(results)} {qt} records."


def format_response(
    envelope: Envelope,
    classification: Optional[Classification] = None,
    follow_up: bool = False,
) -> Dict[str, Any]:
    """Build the final response dict.

    The envelope's own fields stay at the top level; ``classification`` is
    ``None`` for follow-ups and for queries rejected before recognition.
    """
    response: Dict[str, Any] = envelope.model_dump()
    response["summary"] = summarize(envelope)
    response["followUp"] = follow_up
    response["classification"] = classification.model_dump() if classification else None
    response["result_count"] = _count(envelope.results)

    if response["result_count"] > LARGE_RESULT_THRESHOLD:
        response["warning"] = (
            "Large result set. Consider a follow-up query to narrow it down."
        )

    return response
