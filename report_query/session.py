"""
Query session: one loaded report, one base result, and follow-up filtering.

The first query of a session (the *base* query) scans the document; while a
base result is held, later queries are *follow-ups* that ask the LLM filter
to narrow a copy of the base results.  ``reset`` ("New Query") drops the
base so the next query scans the document again.

``extend`` narrows whatever was shown last instead, so a result can be
refined step by step; the base result is never touched by it.

Only one query runs at a time; a submission while another is in flight is
rejected.  Every query captures the session token when it starts, and
writes nothing back if the session was reset before it finished.
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

from report_query.config import CLASSIFIER_MODE
from report_query.dispatcher import dispatch
from report_query.errors import (
    LLMUnavailable,
    NoActiveBase,
    QueryEngineError,
    SessionBusy,
)
from report_query.llm_client import LLMCollaborator, parse_filtered_records
from report_query.logger import logger
from report_query.models import Classification, Envelope, utc_timestamp
from report_query.recognizer import recognize, recognize_enhanced


class QuerySession:
    def __init__(
        self,
        document: Any,
        llm: Optional[LLMCollaborator] = None,
        classifier_mode: str = CLASSIFIER_MODE,
    ):
        self.document = document
        self.llm = llm
        self.classifier_mode = classifier_mode

        self.base_query: Optional[str] = None
        self.base_result: Optional[Envelope] = None
        # most recent non-error result: base, follow-up or extended
        self.last_result: Optional[Envelope] = None
        # recognition of the most recently answered submission; None when it
        # was a filter, or never reached recognition
        self.last_classification: Optional[Classification] = None
        self.history: List[Dict[str, Any]] = []

        self._token = 0
        self._in_flight = False

    @property
    def has_base(self) -> bool:
        return self.base_result is not None

    # ---------------------- LIFECYCLE ----------------------

    def reset(self) -> None:
        """End the current base query; the next query starts a new one."""
        self.base_query = None
        self.base_result = None
        self.last_result = None
        self._token += 1
        logger.info("[SESSION] Base query cleared")

    def clear(self) -> None:
        """Reset and forget the query history."""
        self.reset()
        self.history.clear()

    # ---------------------- QUERIES ----------------------

    async def classify(self, query: str) -> Classification:
        if self.classifier_mode == "rule" or self.llm is None:
            return recognize(query)
        return await recognize_enhanced(query, self.llm)

    async def submit(self, query: str) -> Envelope:
        """Follow-up when a base result is held, otherwise a new base query."""
        if self.has_base:
            return await self.follow_up(query)
        return await self.start_base(query)

    async def start_base(self, query: str) -> Envelope:
        if self._in_flight:
            return self._busy(query)

        self._in_flight = True
        token = self._token
        try:
            classification, envelope = await self._run_base(query)
        finally:
            self._in_flight = False

        if token != self._token:
            logger.info("[SESSION] Session reset while '%s' was running — result discarded", query)
            self.last_classification = None
            return envelope

        self.last_classification = classification
        if not envelope.is_error:
            self.base_query = query
            self.base_result = envelope
            self.last_result = envelope
        self._record(query, envelope, kind="base")
        return envelope

    async def follow_up(self, query: str) -> Envelope:
        if self._in_flight:
            return self._busy(query)
        self.last_classification = None
        if self.base_result is None:
            return Envelope.error(str(NoActiveBase("No base query to filter; start a new query first")))

        self._in_flight = True
        token = self._token
        base_query = self.base_query
        base_result = self.base_result
        try:
            envelope = await self._run_follow_up(query, base_query, base_result)
        finally:
            self._in_flight = False

        if token != self._token:
            logger.info("[SESSION] Session reset while follow-up '%s' was running — result discarded", query)
            return envelope

        if not envelope.is_error:
            self.last_result = envelope
        self._record(query, envelope, kind="followUp")
        return envelope

    async def extend(self, query: str) -> Envelope:
        """Filter the most recent result again, keeping its metadata."""
        if self._in_flight:
            return self._busy(query)
        self.last_classification = None
        if self.last_result is None:
            return Envelope.error(str(NoActiveBase("No result to extend; run a query first")))

        self._in_flight = True
        token = self._token
        source = self.last_result
        try:
            envelope = await self._run_extend(query, source)
        finally:
            self._in_flight = False

        if token != self._token:
            logger.info("[SESSION] Session reset while extended search '%s' was running — result discarded", query)
            return envelope

        if not envelope.is_error:
            self.last_result = envelope
        self._record(query, envelope, kind="extended")
        return envelope

    # ---------------------- INTERNALS ----------------------

    async def _run_base(self, query: str) -> Tuple[Optional[Classification], Envelope]:
        classification = None
        try:
            classification = await self.classify(query)
            logger.info(
                "[SESSION] Base query classified as %s via %s (confidence %.2f)",
                classification.type, classification.source, classification.confidence,
            )
            envelope = await dispatch(classification.handler, self.document, query, self.llm)
        except Exception as e:
            logger.error("[SESSION] Base query failed: %s", e, exc_info=True)
            envelope = Envelope.error(str(e))
        return classification, envelope

    async def _filter_copy(self, source: Envelope, query: str) -> Tuple[List[Any], List[Any]]:
        # the source result is never handed out; the filter works on a copy
        records = copy.deepcopy(source.results)
        if not isinstance(records, list):
            raise QueryEngineError(
                f"{source.queryType} results cannot be filtered; start a new query"
            )
        if self.llm is None:
            raise LLMUnavailable("Filtering results needs an LLM collaborator")

        raw_text = await self.llm.filter_records(records, query)
        return records, parse_filtered_records(raw_text)

    async def _run_follow_up(
        self,
        query: str,
        base_query: Optional[str],
        base_result: Envelope,
    ) -> Envelope:
        try:
            records, filtered = await self._filter_copy(base_result, query)
        except QueryEngineError as e:
            logger.warning("[SESSION] Follow-up filter failed: %s", e)
            return Envelope.error(str(e), followUp=True, baseQuery=base_query)
        except Exception as e:
            logger.error("[SESSION] Follow-up filter raised %s", e, exc_info=True)
            return Envelope.error(str(e), followUp=True, baseQuery=base_query)

        logger.info(
            "[SESSION] Follow-up '%s' kept %d of %d records", query, len(filtered), len(records),
        )
        return Envelope(
            queryType=base_result.queryType,
            results=filtered,
            metadata={
                "followUp": True,
                "baseQuery": base_query,
                "filterQuery": query,
                "baseCount": len(records),
                "filteredCount": len(filtered),
            },
        )

    async def _run_extend(self, query: str, source: Envelope) -> Envelope:
        try:
            records, filtered = await self._filter_copy(source, query)
        except QueryEngineError as e:
            logger.warning("[SESSION] Extended search failed: %s", e)
            return Envelope.error(str(e), extendedFilterQuery=query)
        except Exception as e:
            logger.error("[SESSION] Extended search raised %s", e, exc_info=True)
            return Envelope.error(str(e), extendedFilterQuery=query)

        logger.info(
            "[SESSION] Extended search '%s' kept %d of %d records", query, len(filtered), len(records),
        )
        metadata = copy.deepcopy(source.metadata)
        metadata.update({
            "extendedSearchApplied": True,
            "extendedFilterQuery": query,
            "extendedResultCount": len(filtered),
        })
        return Envelope(queryType=source.queryType, results=filtered, metadata=metadata)

    def _busy(self, query: str) -> Envelope:
        logger.warning("[SESSION] Rejected '%s' — another query is in flight", query)
        self.last_classification = None
        return Envelope.error(str(SessionBusy("Another query is still running; try again when it finishes")))

    def _record(self, query: str, envelope: Envelope, kind: str) -> None:
        self.history.append({
            "query": query,
            "queryType": envelope.queryType,
            "followUp": kind != "base",
            "extended": kind == "extended",
            "timestamp": utc_timestamp(),
        })
