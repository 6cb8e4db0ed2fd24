"""
Extraction routines, one per intent.

Every routine takes the parsed report and returns an ``Envelope``.  Routines
that need the raw query or the LLM collaborator say so in the dispatcher's
registry; the rest take the document alone.

Traversal is best-effort: a missing sub-path becomes an absent field
(dumped as ``"N/A"``) or ``0`` for numeric aggregates, never an exception.
A report without the transaction root yields an empty result with
``metadata.error`` set.
"""

import re
from typing import Any, Dict, List, Optional, Set, Tuple

from report_query.document import (
    MISSING_SECTION_MESSAGE,
    TRANSACTION_ROOT_PATH,
    as_list,
    canonical_type,
    dig,
    first_object,
    get_transactions,
    present,
    to_number,
    transaction_details,
    unique,
)
from report_query.errors import LLMUnavailable
from report_query.flattener import flatten
from report_query.llm_client import LLMCollaborator, parse_query_plan, parse_type_list
from report_query.logger import logger
from report_query.models import (
    NOT_AVAILABLE,
    Envelope,
    InternalFailedReasonRecord,
    InternalStatusRecord,
    ItemLineRecord,
    MTLStatusRecord,
    OrderAttributesRecord,
    OrderTotalRecord,
    PaymentRecord,
    SkippedTransaction,
    StoreDetailsRecord,
)
from report_query.transaction_types import (
    KNOWN_TRANSACTION_TYPES,
    extract_types_from_query,
    filter_known_types,
)

FALLBACK_QUERY_TYPE = "FALLBACK_AI"

LINE_TOTAL_SUFFIX = ".lineOverallTotals.lineTotal"
# superseded or informational copies of a line total
LINE_TOTAL_EXCLUDES = ("oldLineTotal", "Affected", "changeOrderGrandTotalSet")


def _missing_section(query_type: str) -> Envelope:
    logger.info("[EXTRACT] %s — transaction report root not found", query_type)
    return Envelope(
        queryType=query_type,
        results=[],
        metadata={"error": MISSING_SECTION_MESSAGE},
    )


def _or_na(value: Any) -> Any:
    return NOT_AVAILABLE if value is None else value


# ---------------------- SUM LINE TOTAL ----------------------


def sum_line_totals(document: Any) -> Envelope:
    flat = flatten(document)
    total = 0.0
    keys_used: List[str] = []

    for key, value in flat.items():
        if not key.endswith(LINE_TOTAL_SUFFIX):
            continue
        if any(marker in key for marker in LINE_TOTAL_EXCLUDES):
            continue
        number = to_number(value)
        if number is None:
            continue
        total += number
        keys_used.append(key)

    logger.info("[EXTRACT] SUM_LINE_TOTAL — %d line totals, sum=%s", len(keys_used), total)
    return Envelope(
        queryType="SUM_LINE_TOTAL",
        results={"sum": total, "count": len(keys_used), "keysUsed": keys_used},
        metadata={"searchPaths": list(keys_used), "totalProcessed": len(flat)},
    )


# ---------------------- STATUS ----------------------


def get_mtl_status(document: Any) -> Envelope:
    transactions = get_transactions(document)
    if transactions is None:
        return _missing_section("MTL_STATUS")

    records = []
    for i, txn in enumerate(transactions):
        event_id = txn.get("eventId")
        records.append(MTLStatusRecord(
            transactionType=txn.get("transactionType"),
            internalStatus=txn.get("internalStatus"),
            internalFailedReason=txn.get("internalFailedReason"),
            # keep records distinguishable without a native identifier
            eventId=event_id if present(event_id) else f"index-{i}",
            orderNo=txn.get("orderNo"),
        ).model_dump())

    return Envelope(
        queryType="MTL_STATUS",
        results=records,
        metadata={
            "totalTransactions": len(records),
            "uniqueTypes": unique(r["transactionType"] for r in records),
        },
    )


def _base_paths(flat: Dict[str, Any], leaf_key: str) -> List[str]:
    """Parent path of every transaction-report leaf named *leaf_key*."""
    suffix = f".{leaf_key}"
    return [
        key[: -len(suffix)] for key in flat
        if "infinityTransactionReport" in key and key.endswith(suffix)
    ]


def get_internal_status(document: Any) -> Envelope:
    flat = flatten(document)
    records = []
    for base_path in _base_paths(flat, "internalStatus"):
        records.append(InternalStatusRecord(
            internalStatus=flat.get(f"{base_path}.internalStatus"),
            transactionType=flat.get(f"{base_path}.transactionType"),
            eventId=flat.get(f"{base_path}.eventId"),
            orderNo=flat.get(f"{base_path}.orderNo"),
            basePath=base_path,
        ).model_dump())

    return Envelope(
        queryType="INTERNAL_STATUS",
        results=records,
        metadata={
            "totalStatuses": len(records),
            "uniqueStatuses": unique(r["internalStatus"] for r in records),
        },
    )


def get_internal_failed_reason(document: Any) -> Envelope:
    flat = flatten(document)
    records = []
    for base_path in _base_paths(flat, "internalFailedReason"):
        records.append(InternalFailedReasonRecord(
            internalFailedReason=flat.get(f"{base_path}.internalFailedReason"),
            transactionType=flat.get(f"{base_path}.transactionType"),
            internalStatus=flat.get(f"{base_path}.internalStatus"),
            eventId=flat.get(f"{base_path}.eventId"),
            orderNo=flat.get(f"{base_path}.orderNo"),
            basePath=base_path,
        ).model_dump())

    return Envelope(
        queryType="INTERNAL_FAILED_REASON",
        results=records,
        metadata={
            "totalFailures": len(records),
            "uniqueReasons": unique(r["internalFailedReason"] for r in records),
        },
    )


# ---------------------- ORDER TOTAL BY TRANSACTION TYPE ----------------------


def get_order_total_by_transaction_type(document: Any, query: str) -> Envelope:
    transactions = get_transactions(document)
    if transactions is None:
        return _missing_section("ORDER_TOTAL_BY_TXN_TYPE")

    requested = extract_types_from_query(query or "")
    records = []

    for txn in transactions:
        txn_type = canonical_type(txn.get("transactionType"))
        if requested and txn_type not in requested:
            continue
        raw_total = dig(transaction_details(txn), "totals", "grandTotal")
        number = to_number(raw_total)
        records.append(OrderTotalRecord(
            eventId=txn.get("eventId"),
            transactionType=txn.get("transactionType"),
            orderNo=txn.get("orderNo"),
            grandTotal=number if number is not None else 0.0,
            grandTotalRaw=raw_total if present(raw_total) else "Not Available",
        ).model_dump())

    available = unique(_or_na(canonical_type(t.get("transactionType"))) for t in transactions)
    total_sum = sum(r["grandTotal"] for r in records)

    logger.info(
        "[EXTRACT] ORDER_TOTAL_BY_TXN_TYPE — requested=%s matched=%d totalSum=%s",
        sorted(requested), len(records), total_sum,
    )
    return Envelope(
        queryType="ORDER_TOTAL_BY_TXN_TYPE",
        results=records,
        metadata={
            "requestedTypes": sorted(requested),
            "matchedTransactions": len(records),
            "totalSum": total_sum,
            "availableTransactionTypes": available,
            # requested types that the report does not contain at all
            "missingTypes": sorted(requested - set(available)),
            "allKnownTypes": list(KNOWN_TRANSACTION_TYPES),
        },
    )


# ---------------------- PAYMENT DETAILS ----------------------


async def _infer_types_with_llm(query: str, llm: LLMCollaborator) -> Set[str]:
    try:
        raw_text = await llm.infer_transaction_types(query, KNOWN_TRANSACTION_TYPES)
        candidates = parse_type_list(raw_text)
    except (LLMUnavailable, ValueError) as e:
        logger.warning("[EXTRACT] LLM type inference failed: %s", e)
        return set()
    inferred = filter_known_types(candidates)
    logger.info("[EXTRACT] LLM inferred transaction types %s from %s", sorted(inferred), candidates)
    return inferred


def _payment_record(txn: Dict[str, Any], payments: Dict[str, Any]) -> Optional[PaymentRecord]:
    methods = first_object(payments.get("paymentMethods"))
    charge = first_object(methods.get("chargeTransactionDetailSet"))

    has_data = (
        present(payments.get("paymentStatus"))
        or present(methods.get("creditCardNo"))
        or present(charge.get("requestAmount"))
    )
    if not has_data:
        return None

    return PaymentRecord(
        eventId=txn.get("eventId"),
        transactionType=canonical_type(txn.get("transactionType")),
        orderNo=txn.get("orderNo"),
        paymentStatus=payments.get("paymentStatus"),
        totalOpenAuthorizations=payments.get("totalOpenAuthorizations"),
        totalOpenBookings=payments.get("totalOpenBookings"),
        creditCardType=methods.get("creditCardType"),
        creditCardNo=methods.get("creditCardNo"),
        displayCreditCardNo=methods.get("displayCreditCardNo"),
        creditCardExpDate=methods.get("creditCardExpDate"),
        firstName=methods.get("firstName"),
        lastName=methods.get("lastName"),
        paymentType=methods.get("paymentType"),
        paymentReference1=methods.get("paymentReference1"),
        paymentKey=methods.get("paymentKey"),
        maxChargeLimit=methods.get("maxChargeLimit"),
        requestAmount=charge.get("requestAmount"),
        authorizationId=charge.get("authorizationId"),
        bookAmount=charge.get("bookAmount"),
        creditAmount=charge.get("creditAmount"),
        amountCollected=charge.get("amountCollected"),
        status=charge.get("status"),
        chargeType=charge.get("chargeType"),
        recordType=charge.get("recordType"),
        authorizationExpirationDate=charge.get("authorizationExpirationDate"),
        collectionDate=charge.get("collectionDate"),
    )


async def get_payment_details(
    document: Any,
    query: str = "",
    llm: Optional[LLMCollaborator] = None,
) -> Envelope:
    transactions = get_transactions(document)
    if transactions is None:
        return _missing_section("PAYMENT_DETAILS")

    requested = extract_types_from_query(query or "")
    type_source = "query" if requested else "none"
    if not requested and query and llm is not None:
        requested = await _infer_types_with_llm(query, llm)
        if requested:
            type_source = "llm"

    found: List[Dict[str, Any]] = []
    skipped: List[Dict[str, Any]] = []

    for txn in transactions:
        event_id = txn.get("eventId")
        txn_type = canonical_type(txn.get("transactionType"))
        payments = transaction_details(txn).get("payments")

        # repeated elements arrive as a list; {} counts as present
        if not present(payments) or payments == []:
            skipped.append(SkippedTransaction(
                eventId=event_id, transactionType=txn_type, reason="No payments section",
            ).model_dump())
            continue

        record = _payment_record(txn, first_object(payments))
        if record is None:
            skipped.append(SkippedTransaction(
                eventId=event_id, transactionType=txn_type, reason="No relevant payment data",
            ).model_dump())
            continue
        found.append(record.model_dump())

    if requested:
        requested_label = ", ".join(sorted(requested))
        results = [r for r in found if r["transactionType"] in requested]
        for r in found:
            if r["transactionType"] not in requested:
                skipped.append(SkippedTransaction(
                    eventId=r["eventId"],
                    transactionType=r["transactionType"],
                    reason=f"Filtered out - not in requested: [{requested_label}]",
                ).model_dump())
    else:
        results = found

    logger.info(
        "[EXTRACT] PAYMENT_DETAILS — %d transactions, %d returned, %d skipped (filter=%s via %s)",
        len(transactions), len(results), len(skipped), sorted(requested), type_source,
    )
    return Envelope(
        queryType="PAYMENT_DETAILS",
        results=results,
        metadata={
            "filteringApplied": bool(requested),
            "mode": "filtered" if requested else "showing all",
            "filteredBy": sorted(requested),
            "typeSource": type_source,
            "returnedTransactionTypes": unique(r["transactionType"] for r in results),
            "totalReturned": len(results),
            "totalPaymentDetailsFound": len(found),
            "skippedTransactions": skipped,
            "uniquePaymentTypes": unique(r["paymentType"] for r in results),
            "uniquePaymentStatuses": unique(r["paymentStatus"] for r in results),
            "uniqueCreditCardTypes": unique(r["creditCardType"] for r in results),
            "allAvailableTransactionTypes": unique(r["transactionType"] for r in found),
        },
    )


# ---------------------- PAYLOAD PROJECTIONS ----------------------


def get_item_line_totals(document: Any) -> Envelope:
    transactions = get_transactions(document)
    if transactions is None:
        return _missing_section("ITEM_LINE_TOTALS")

    records = []
    for txn in transactions:
        lines = dig(transaction_details(txn), "order", "orderLineDetailSet")
        for line in as_list(lines):
            if not isinstance(line, dict):
                continue
            totals = line.get("lineOverallTotals")
            records.append(ItemLineRecord(
                eventId=txn.get("eventId"),
                orderNo=txn.get("orderNo"),
                itemId=dig(line, "item", "itemId"),
                primeLineNo=line.get("primeLineNo"),
                lineTotal=dig(totals, "lineTotal"),
                tax=dig(totals, "tax"),
                discount=dig(totals, "discount"),
            ).model_dump())

    return Envelope(
        queryType="ITEM_LINE_TOTALS",
        results=records,
        metadata={
            "totalItems": len(records),
            "uniqueItems": unique(r["itemId"] for r in records),
            "uniqueOrders": unique(r["orderNo"] for r in records),
        },
    )


def get_order_attributes(document: Any) -> Envelope:
    transactions = get_transactions(document)
    if transactions is None:
        return _missing_section("ORDER_ATTRIBUTES")

    records = []
    for txn in transactions:
        details = transaction_details(txn)
        attrs = dig(details, "order", "orderAttributes")
        totals = dig(details, "totals")
        records.append(OrderAttributesRecord(
            eventId=txn.get("eventId"),
            transactionType=txn.get("transactionType"),
            originalInvoiceNo=dig(attrs, "originalInvoiceNo"),
            originalMasterInvoiceNo=dig(attrs, "originalMasterInvoiceNo"),
            businessDate=dig(attrs, "businessDate"),
            salesDate=dig(attrs, "salesDate"),
            grandDiscount=dig(totals, "grandDiscount"),
            grandTax=dig(totals, "grandTax"),
            grandTotal=dig(totals, "grandTotal"),
            lineSubTotal=dig(totals, "lineSubTotal"),
        ).model_dump())

    return Envelope(
        queryType="ORDER_ATTRIBUTES",
        results=records,
        metadata={
            "totalTransactions": len(records),
            "transactionTypes": unique(r["transactionType"] for r in records),
        },
    )


def get_store_details(document: Any) -> Envelope:
    transactions = get_transactions(document)
    if transactions is None:
        return _missing_section("STORE_DETAILS")

    records = []
    for txn in transactions:
        store = dig(transaction_details(txn), "storeInfo")
        records.append(StoreDetailsRecord(
            eventId=txn.get("eventId"),
            transactionType=txn.get("transactionType"),
            locationNumber=dig(store, "locationNumber"),
            zippedInStore=dig(store, "zippedInStore"),
        ).model_dump())

    return Envelope(
        queryType="STORE_DETAILS",
        results=records,
        metadata={
            "total": len(records),
            "uniqueTransactionTypes": unique(r["transactionType"] for r in records),
            "uniqueLocations": unique(r["locationNumber"] for r in records),
        },
    )


# ---------------------- AI FALLBACK ----------------------

_TRANSACTION_PREFIX_RE = re.compile(
    rf"^({re.escape(TRANSACTION_ROOT_PATH)}(?:\[\d+\])?)(?=\.|\[|$)"
)
_INDEX_SUFFIX_RE = re.compile(r"(\[\d+\])+$")


def _transaction_prefix(path: str) -> str:
    m = _TRANSACTION_PREFIX_RE.match(path)
    return m.group(1) if m else ""


def _leaf_key(path: str) -> str:
    # "a.b[0].c[2]" → "c"
    return _INDEX_SUFFIX_RE.sub("", path.rsplit(".", 1)[-1])


def _apply_plan_filter(
    matches: List[Tuple[str, Any]],
    flat: Dict[str, Any],
    plan_filter: Dict[str, Any],
) -> List[Tuple[str, Any]]:
    """Keep matches whose transaction holds every ``field == value`` pair."""
    allowed: Optional[Set[str]] = None
    for field, value in plan_filter.items():
        wanted = str(value).strip().lower()
        prefixes = {
            _transaction_prefix(path)
            for path, leaf in flat.items()
            if _leaf_key(path).lower() == str(field).lower()
            and str(leaf).strip().lower() == wanted
        }
        allowed = prefixes if allowed is None else allowed & prefixes
    if allowed is None:
        return matches
    return [(k, v) for k, v in matches if _transaction_prefix(k) in allowed]


async def fallback_query(
    document: Any,
    query: str,
    llm: Optional[LLMCollaborator] = None,
) -> Envelope:
    """Least precise path: LLM plan + flatten-and-substring match."""
    if llm is None:
        raise LLMUnavailable("No LLM collaborator configured for the AI fallback")

    raw_text = await llm.plan(query)
    plan = parse_query_plan(raw_text)
    logger.info("[EXTRACT] FALLBACK_AI — plan extract=%s filter=%s", plan.extract, plan.filter)

    flat = flatten(document)
    fields = [f.lower() for f in plan.extract if f.strip()]
    matches = [
        (key, value) for key, value in flat.items()
        if any(f in key.lower() for f in fields)
    ]
    if plan.filter:
        matches = _apply_plan_filter(matches, flat, plan.filter)

    plan_dict = plan.model_dump()
    return Envelope(
        queryType=FALLBACK_QUERY_TYPE,
        results={
            "plan": plan_dict,
            "extracted": [{"key": k, "value": v} for k, v in matches],
        },
        metadata={"aiPlan": plan_dict, "totalMatches": len(matches)},
    )
