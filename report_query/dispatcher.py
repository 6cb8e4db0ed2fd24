"""
Handler registry and dispatcher.

Each intent is bound to exactly one extraction routine.  A ``HandlerSpec``
declares what the routine needs besides the document:

- ``needs_query``  — the raw query text is forwarded;
- ``needs_llm``    — the LLM collaborator is forwarded.

Coroutine routines are awaited; plain ones are called directly.  Whatever
happens inside a routine, ``dispatch`` returns an ``Envelope``: unknown
handler names and routine exceptions both come back as ``ERROR`` envelopes.
"""

import inspect
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from report_query import extractors
from report_query.errors import QueryEngineError, UnknownHandler
from report_query.llm_client import LLMCollaborator
from report_query.logger import logger
from report_query.models import Envelope
from report_query.patterns import HANDLER_BY_INTENT, Intent


@dataclass(frozen=True)
class HandlerSpec:
    intent: Intent
    name: str
    func: Callable[..., Any]
    needs_query: bool = False
    needs_llm: bool = False


def _spec(intent: Intent, func: Callable[..., Any], **flags: bool) -> HandlerSpec:
    return HandlerSpec(intent=intent, name=HANDLER_BY_INTENT[intent], func=func, **flags)


HANDLER_SPECS = (
    _spec(Intent.SUM_LINE_TOTAL, extractors.sum_line_totals),
    _spec(Intent.ITEM_LINE_TOTALS, extractors.get_item_line_totals),
    _spec(Intent.ORDER_ATTRIBUTES, extractors.get_order_attributes),
    _spec(Intent.STORE_DETAILS, extractors.get_store_details),
    _spec(Intent.MTL_STATUS, extractors.get_mtl_status),
    _spec(Intent.INTERNAL_STATUS, extractors.get_internal_status),
    _spec(Intent.INTERNAL_FAILED_REASON, extractors.get_internal_failed_reason),
    _spec(Intent.ORDER_TOTAL_BY_TXN_TYPE, extractors.get_order_total_by_transaction_type, needs_query=True),
    _spec(Intent.PAYMENT_DETAILS, extractors.get_payment_details, needs_query=True, needs_llm=True),
    _spec(Intent.UNKNOWN, extractors.fallback_query, needs_query=True, needs_llm=True),
)

REGISTRY: Mapping[str, HandlerSpec] = MappingProxyType({s.name: s for s in HANDLER_SPECS})


def get_handler(handler_name: str) -> HandlerSpec:
    try:
        return REGISTRY[handler_name]
    except KeyError:
        raise UnknownHandler(handler_name) from None


async def dispatch(
    handler_name: str,
    document: Any,
    query: Optional[str] = None,
    llm: Optional[LLMCollaborator] = None,
) -> Envelope:
    """Run the routine registered under *handler_name*."""
    try:
        spec = get_handler(handler_name)
    except UnknownHandler as e:
        logger.error("[DISPATCH] %s", e)
        return Envelope.error(str(e), handler=handler_name)

    args = [document]
    if spec.needs_query:
        args.append(query or "")
    kwargs = {"llm": llm} if spec.needs_llm else {}

    logger.info("[DISPATCH] %s → %s", spec.intent.value, spec.name)
    try:
        result = spec.func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
    except QueryEngineError as e:
        logger.warning("[DISPATCH] %s failed: %s", spec.name, e)
        return Envelope.error(str(e), handler=spec.name)
    except Exception as e:
        logger.error("[DISPATCH] %s raised %s", spec.name, e, exc_info=True)
        return Envelope.error(str(e), handler=spec.name)

    return result
