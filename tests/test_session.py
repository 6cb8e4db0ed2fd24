import asyncio
import copy
import json

from report_query.session import QuerySession


def test_first_query_becomes_base(report):
    session = QuerySession(report, classifier_mode="rule")
    envelope = asyncio.run(session.submit("show mtl status"))

    assert envelope.queryType == "MTL_STATUS"
    assert session.has_base
    assert session.base_query == "show mtl status"
    assert session.last_classification.handler == "getMTLStatus"
    assert session.history[0]["followUp"] is False


def test_follow_up_filters_a_copy_of_the_base(report, stub_llm):
    llm = stub_llm(filter=json.dumps([{"eventId": "EVT-2", "internalStatus": "FAILED"}]))
    session = QuerySession(report, llm=llm, classifier_mode="rule")

    base = asyncio.run(session.submit("show mtl status"))
    snapshot = copy.deepcopy(base.results)

    envelope = asyncio.run(session.submit("only the failed ones"))

    assert llm.operations() == ["filter"]
    assert envelope.queryType == "MTL_STATUS"
    assert envelope.results == [{"eventId": "EVT-2", "internalStatus": "FAILED"}]
    assert envelope.metadata["followUp"] is True
    assert envelope.metadata["baseQuery"] == "show mtl status"
    assert envelope.metadata["baseCount"] == 3
    assert envelope.metadata["filteredCount"] == 1

    assert session.base_result is base
    assert session.base_result.results == snapshot
    assert [h["followUp"] for h in session.history] == [False, True]


def test_follow_up_parse_failure_keeps_base(report, stub_llm):
    session = QuerySession(report, llm=stub_llm(filter="Sorry, no."), classifier_mode="rule")
    base = asyncio.run(session.submit("show mtl status"))
    envelope = asyncio.run(session.submit("only the failed ones"))

    assert envelope.is_error
    assert envelope.results["error"] == "Error processing filter. Please refine your query."
    assert session.base_result is base


def test_follow_up_without_llm_is_an_error(report):
    session = QuerySession(report, classifier_mode="rule")
    asyncio.run(session.submit("show mtl status"))
    envelope = asyncio.run(session.follow_up("only failed"))
    assert envelope.is_error
    assert session.has_base


def test_follow_up_without_base_is_rejected(report, stub_llm):
    llm = stub_llm(filter="[]")
    session = QuerySession(report, llm=llm)
    envelope = asyncio.run(session.follow_up("only failed"))
    assert envelope.is_error
    assert "No base query" in envelope.results["error"]
    assert llm.calls == []


def test_follow_up_on_scalar_result_is_an_error(report, stub_llm):
    llm = stub_llm(filter="[]")
    session = QuerySession(report, llm=llm, classifier_mode="rule")
    asyncio.run(session.submit("sum of line total"))
    envelope = asyncio.run(session.submit("only the big ones"))
    assert envelope.is_error
    assert "cannot be filtered" in envelope.results["error"]
    assert llm.calls == []


def test_error_result_does_not_become_base(report):
    session = QuerySession(report, classifier_mode="rule")
    envelope = asyncio.run(session.submit("how is the weather"))
    assert envelope.is_error
    assert not session.has_base
    assert session.history[0]["queryType"] == "ERROR"


def test_reset_starts_a_new_base(report):
    session = QuerySession(report, classifier_mode="rule")
    asyncio.run(session.submit("show mtl status"))
    session.reset()
    assert not session.has_base

    envelope = asyncio.run(session.submit("store details"))
    assert envelope.queryType == "STORE_DETAILS"
    assert session.base_query == "store details"
    assert len(session.history) == 2


def test_clear_forgets_history(report):
    session = QuerySession(report, classifier_mode="rule")
    asyncio.run(session.submit("show mtl status"))
    session.clear()
    assert not session.has_base
    assert session.history == []


def test_auto_mode_consults_llm_for_weak_matches(report, stub_llm):
    llm = stub_llm(classify='{"type": "STORE_DETAILS", "confidence": 0.95}')
    session = QuerySession(report, llm=llm, classifier_mode="auto")
    envelope = asyncio.run(session.submit("where was this rung up"))
    assert envelope.queryType == "STORE_DETAILS"
    assert session.last_classification.source == "llm"


def test_second_query_while_in_flight_is_rejected(report, stub_llm):
    async def scenario():
        gate = asyncio.Event()
        llm = stub_llm(gate=gate, plan='{"extract": ["orderNo"]}')
        session = QuerySession(report, llm=llm, classifier_mode="rule")

        first = asyncio.create_task(session.submit("what is the weather"))
        await asyncio.sleep(0)

        rejected = await session.submit("show mtl status")
        gate.set()
        return session, await first, rejected

    session, first, rejected = asyncio.run(scenario())
    assert rejected.is_error
    assert "still running" in rejected.results["error"]
    assert first.queryType == "FALLBACK_AI"
    assert session.base_query == "what is the weather"
    assert [h["query"] for h in session.history] == ["what is the weather"]


def test_reset_discards_in_flight_result(report, stub_llm):
    async def scenario():
        gate = asyncio.Event()
        llm = stub_llm(gate=gate, plan='{"extract": ["orderNo"]}')
        session = QuerySession(report, llm=llm, classifier_mode="rule")

        pending = asyncio.create_task(session.submit("what is the weather"))
        await asyncio.sleep(0)
        session.reset()
        gate.set()
        return session, await pending

    session, envelope = asyncio.run(scenario())
    assert envelope.queryType == "FALLBACK_AI"
    assert not session.has_base
    assert session.history == []


# ---------------------- EXTENDED SEARCH ----------------------


def test_extend_narrows_the_latest_result(report, stub_llm):
    llm = stub_llm(filter=json.dumps([
        {"eventId": "EVT-1", "internalStatus": "PROCESSED"},
        {"eventId": "EVT-2", "internalStatus": "FAILED"},
    ]))
    session = QuerySession(report, llm=llm, classifier_mode="rule")

    base = asyncio.run(session.submit("show mtl status"))
    snapshot = copy.deepcopy(base.results)
    follow = asyncio.run(session.submit("orders only"))

    llm.replies["filter"] = json.dumps([{"eventId": "EVT-2", "internalStatus": "FAILED"}])
    extended = asyncio.run(session.extend("only failures"))

    # the extended search filtered the follow-up result, not the base
    _op, prompt = llm.calls[-1]
    assert "EVT-2" in prompt and "EVT-3" not in prompt

    assert extended.queryType == "MTL_STATUS"
    assert extended.results == [{"eventId": "EVT-2", "internalStatus": "FAILED"}]
    assert extended.metadata["filterQuery"] == "orders only"
    assert extended.metadata["extendedSearchApplied"] is True
    assert extended.metadata["extendedFilterQuery"] == "only failures"
    assert extended.metadata["extendedResultCount"] == 1
    assert "extendedFilterQuery" not in follow.metadata

    assert session.base_result is base
    assert session.base_result.results == snapshot
    assert session.last_result is extended
    assert session.last_classification is None
    assert [h["followUp"] for h in session.history] == [False, True, True]
    assert [h["extended"] for h in session.history] == [False, False, True]


def test_extend_can_repeat(report, stub_llm):
    llm = stub_llm(filter=json.dumps([{"eventId": "EVT-1"}, {"eventId": "EVT-3"}]))
    session = QuerySession(report, llm=llm, classifier_mode="rule")
    asyncio.run(session.submit("show mtl status"))

    first = asyncio.run(session.extend("processed"))
    llm.replies["filter"] = json.dumps([{"eventId": "EVT-3"}])
    second = asyncio.run(session.extend("trans in"))

    assert first.metadata["extendedResultCount"] == 2
    assert second.metadata["extendedFilterQuery"] == "trans in"
    assert second.results == [{"eventId": "EVT-3"}]
    assert session.last_result is second
    assert session.base_result.metadata.get("extendedSearchApplied") is None


def test_extend_without_result_is_rejected(report, stub_llm):
    llm = stub_llm(filter="[]")
    session = QuerySession(report, llm=llm)
    envelope = asyncio.run(session.extend("only failed"))
    assert envelope.is_error
    assert "No result to extend" in envelope.results["error"]
    assert llm.calls == []


def test_extend_failure_keeps_latest_result(report, stub_llm):
    session = QuerySession(report, llm=stub_llm(filter="not json"), classifier_mode="rule")
    base = asyncio.run(session.submit("show mtl status"))

    envelope = asyncio.run(session.extend("only failed"))

    assert envelope.is_error
    assert envelope.metadata["extendedFilterQuery"] == "only failed"
    assert session.last_result is base
    assert session.history[-1]["extended"] is True


def test_extend_on_scalar_result_is_an_error(report, stub_llm):
    llm = stub_llm(filter="[]")
    session = QuerySession(report, llm=llm, classifier_mode="rule")
    asyncio.run(session.submit("sum of line total"))
    envelope = asyncio.run(session.extend("only the big ones"))
    assert envelope.is_error
    assert "cannot be filtered" in envelope.results["error"]
    assert llm.calls == []


def test_reset_drops_the_extendable_result(report, stub_llm):
    session = QuerySession(report, llm=stub_llm(filter="[]"), classifier_mode="rule")
    asyncio.run(session.submit("show mtl status"))
    session.reset()
    assert session.last_result is None
    assert asyncio.run(session.extend("anything")).is_error


def test_reset_discards_in_flight_extension(report, stub_llm):
    async def scenario():
        gate = asyncio.Event()
        llm = stub_llm(filter=json.dumps([{"eventId": "EVT-1"}]))
        session = QuerySession(report, llm=llm, classifier_mode="rule")
        await session.submit("show mtl status")

        llm.gate = gate
        pending = asyncio.create_task(session.extend("only the first"))
        await asyncio.sleep(0)
        session.reset()
        gate.set()
        return session, await pending

    session, envelope = asyncio.run(scenario())
    assert envelope.results == [{"eventId": "EVT-1"}]
    assert session.last_result is None
    assert len(session.history) == 1


# ---------------------- CLASSIFICATION TRACKING ----------------------


def test_busy_rejection_clears_classification(report, stub_llm):
    async def scenario():
        gate = asyncio.Event()
        llm = stub_llm(plan='{"extract": ["orderNo"]}')
        session = QuerySession(report, llm=llm, classifier_mode="rule")
        await session.submit("show mtl status")
        session.reset()

        llm.gate = gate
        first = asyncio.create_task(session.submit("what is the weather"))
        await asyncio.sleep(0)
        rejected = await session.submit("store details")
        after_rejection = session.last_classification
        gate.set()
        await first
        return session, rejected, after_rejection

    session, rejected, after_rejection = asyncio.run(scenario())
    assert rejected.is_error
    assert after_rejection is None
    assert session.last_classification.handler == "fallbackQuery"


def test_discarded_query_clears_classification(report, stub_llm):
    async def scenario():
        gate = asyncio.Event()
        llm = stub_llm(plan='{"extract": ["orderNo"]}')
        session = QuerySession(report, llm=llm, classifier_mode="rule")
        await session.submit("show mtl status")
        session.reset()

        llm.gate = gate
        pending = asyncio.create_task(session.submit("what is the weather"))
        await asyncio.sleep(0)
        session.reset()
        gate.set()
        await pending
        return session

    session = asyncio.run(scenario())
    assert session.last_classification is None


def test_follow_up_clears_classification(report, stub_llm):
    session = QuerySession(report, llm=stub_llm(filter="[]"), classifier_mode="rule")
    asyncio.run(session.submit("show mtl status"))
    assert session.last_classification is not None
    asyncio.run(session.submit("only failed"))
    assert session.last_classification is None
