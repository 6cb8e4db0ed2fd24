import asyncio

import pytest

from report_query.dispatcher import HANDLER_SPECS, REGISTRY, dispatch, get_handler
from report_query.errors import UnknownHandler
from report_query.patterns import HANDLER_BY_INTENT, Intent


def test_every_intent_has_exactly_one_handler():
    assert {spec.intent for spec in HANDLER_SPECS} == set(Intent)
    assert len(REGISTRY) == len(HANDLER_SPECS)
    for intent, name in HANDLER_BY_INTENT.items():
        assert REGISTRY[name].intent is intent


def test_registry_is_read_only():
    with pytest.raises(TypeError):
        REGISTRY["dropEverything"] = REGISTRY["getMTLStatus"]


def test_get_handler_unknown_name():
    with pytest.raises(UnknownHandler) as exc:
        get_handler("dropEverything")
    assert exc.value.handler_name == "dropEverything"


def test_dispatch_unknown_handler_returns_error_envelope(report):
    envelope = asyncio.run(dispatch("dropEverything", report))
    assert envelope.is_error
    assert envelope.results == {"error": "Unknown handler: dropEverything"}
    assert envelope.metadata["handler"] == "dropEverything"
    assert "timestamp" in envelope.metadata


def test_dispatch_sync_handler(report):
    envelope = asyncio.run(dispatch("getStoreDetails", report))
    assert envelope.queryType == "STORE_DETAILS"
    assert len(envelope.results) == 3


def test_dispatch_forwards_query(report):
    envelope = asyncio.run(dispatch("getOrderTotalByTransactionType", report, "order total of create order"))
    assert envelope.metadata["requestedTypes"] == ["CREATE_ORDER"]


def test_dispatch_awaits_async_handler(report, stub_llm):
    llm = stub_llm(infer='["TRANS_IN"]')
    envelope = asyncio.run(dispatch("getPaymentDetails", report, "card used", llm))
    assert envelope.queryType == "PAYMENT_DETAILS"
    assert envelope.results == []
    assert llm.operations() == ["infer"]


def test_dispatch_fallback_without_llm_is_an_error(report):
    envelope = asyncio.run(dispatch("fallbackQuery", report, "what is the weather"))
    assert envelope.is_error
    assert "No LLM collaborator" in envelope.results["error"]
    assert envelope.metadata["handler"] == "fallbackQuery"


def test_dispatch_unparseable_plan_is_an_error(report, stub_llm):
    llm = stub_llm(plan="I cannot help with that")
    envelope = asyncio.run(dispatch("fallbackQuery", report, "what is the weather", llm))
    assert envelope.is_error
    assert "query plan" in envelope.results["error"]


def test_dispatch_depth_exceeded_is_an_error():
    doc = {}
    doc["self"] = doc
    envelope = asyncio.run(dispatch("sumLineTotals", doc))
    assert envelope.is_error
    assert "nesting exceeds" in envelope.results["error"]
