"""
FastAPI service — Natural Language query interface for transaction reports.

Features:
- Sessions holding one loaded report, a base result and query history
- Keyword intent recognition with LLM fallback classification
- Follow-up queries that filter the base result via the LLM
- Extended search that narrows the latest result again
- Document flattening, key-path lookup and LLM key resolution tools
"""

import uuid
from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from report_query import __version__
from report_query.config import CLASSIFIER_MODE, GEMINI_API_KEY, GEMINI_MODEL
from report_query.document import MISSING_SECTION_MESSAGE, get_transactions
from report_query.errors import DepthExceeded, KeyResolutionFailure, LLMUnavailable
from report_query.flattener import find_key_paths, find_matches, flatten, resolve_key
from report_query.llm_client import build_default_collaborator
from report_query.logger import logger
from report_query.recognizer import recognize, recognize_enhanced
from report_query.response_formatter import format_response
from report_query.session import QuerySession


app = FastAPI(title="Transaction Report Query Service", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

sessions: Dict[str, QuerySession] = {}

# ---------------------- REQUEST MODELS ----------------------


class DocumentRequest(BaseModel):
    document: Any


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)


class KeyPathRequest(BaseModel):
    document: Any
    key: str = Field(min_length=1)


class MatchRequest(BaseModel):
    document: Any
    key: str = Field(min_length=1)
    value: str


class ResolveKeyRequest(BaseModel):
    document: Any
    term: str = Field(min_length=1)


# ---------------------- HELPERS ----------------------


def _get_session(session_id: str) -> QuerySession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return session


def _session_state(session_id: str, session: QuerySession) -> Dict[str, Any]:
    return {
        "session_id": session_id,
        "base_query": session.base_query,
        "has_base": session.has_base,
        "can_extend": session.last_result is not None,
        "history": list(session.history),
    }


# ---------------------- SESSIONS ----------------------


@app.post("/sessions")
def create_session(request: DocumentRequest):
    """Load a report and open a query session over it."""
    if not isinstance(request.document, (dict, list)):
        raise HTTPException(status_code=400, detail="Document must be a JSON object or array")

    session_id = uuid.uuid4().hex
    session = QuerySession(request.document, llm=build_default_collaborator())
    sessions[session_id] = session

    transactions = get_transactions(request.document)
    response: Dict[str, Any] = {
        "session_id": session_id,
        "transactions": len(transactions) if transactions is not None else 0,
        "llm_enabled": session.llm is not None,
    }
    if transactions is None:
        response["warning"] = MISSING_SECTION_MESSAGE

    logger.info(
        "[API] Session %s opened (%d transactions, llm=%s)",
        session_id, response["transactions"], response["llm_enabled"],
    )
    return response


@app.post("/sessions/{session_id}/query")
async def run_query(session_id: str, request: QueryRequest):
    """Base query when no base result is held, otherwise a follow-up filter."""
    session = _get_session(session_id)
    envelope = await session.submit(request.query)

    follow_up = bool(envelope.metadata.get("followUp"))
    classification = session.last_classification

    logger.info(
        "[API] Session %s — '%s' → %s (followUp=%s)",
        session_id, request.query, envelope.queryType, follow_up,
    )
    return format_response(envelope, classification, follow_up)


@app.post("/sessions/{session_id}/extend")
async def extend_query(session_id: str, request: QueryRequest):
    """Narrow the most recent result again (base, follow-up or extended)."""
    session = _get_session(session_id)
    envelope = await session.extend(request.query)

    logger.info(
        "[API] Session %s — extended search '%s' → %s",
        session_id, request.query, envelope.queryType,
    )
    response = format_response(envelope, None, follow_up=True)
    response["extended"] = True
    return response


@app.post("/sessions/{session_id}/new-query")
def new_query(session_id: str):
    session = _get_session(session_id)
    session.reset()
    return _session_state(session_id, session)


@app.post("/sessions/{session_id}/clear")
def clear_session(session_id: str):
    session = _get_session(session_id)
    session.clear()
    return _session_state(session_id, session)


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    return _session_state(session_id, _get_session(session_id))


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str):
    _get_session(session_id)
    del sessions[session_id]
    logger.info("[API] Session %s closed", session_id)
    return {"status": "deleted", "session_id": session_id}


# ---------------------- STATELESS TOOLS ----------------------


@app.post("/recognize")
async def recognize_query(request: QueryRequest):
    """Classify a query without running it."""
    llm = build_default_collaborator() if CLASSIFIER_MODE == "auto" else None
    if llm is None:
        return recognize(request.query).model_dump()
    classification = await recognize_enhanced(request.query, llm)
    return classification.model_dump()


@app.post("/flatten")
def flatten_report(request: DocumentRequest):
    """Return every leaf of the document keyed by its dotted path."""
    try:
        flat = flatten(request.document)
    except DepthExceeded as e:
        logger.error("flatten error: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    return {"fields": flat, "total_fields": len(flat)}


@app.post("/key-paths")
def key_paths(request: KeyPathRequest):
    """Every path at which a key occurs."""
    paths = find_key_paths(request.document, request.key)
    return {"key": request.key, "paths": paths, "count": len(paths)}


@app.post("/match")
def match_value(request: MatchRequest):
    """Every occurrence of a key whose value equals the given value."""
    matches = find_matches(request.document, request.key, request.value)
    return {
        "key": request.key,
        "value": request.value,
        "matches": matches,
        "count": len(matches),
    }


@app.post("/resolve-key")
async def resolve_key_term(request: ResolveKeyRequest):
    """Map a vague term onto one of the document's paths, then locate it."""
    try:
        key = await resolve_key(request.document, request.term, build_default_collaborator())
    except LLMUnavailable as e:
        logger.error("resolve-key error: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    except (KeyResolutionFailure, DepthExceeded) as e:
        logger.warning("resolve-key error: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    paths = find_key_paths(request.document, key)
    logger.info("[API] Resolved '%s' → %s (%d paths)", request.term, key, len(paths))
    return {"term": request.term, "key": key, "paths": paths, "count": len(paths)}


# ---------------------- STATUS ----------------------


@app.get("/health")
def health_check():
    return {"status": "ok", "version": __version__, "sessions": len(sessions)}


@app.get("/llm-status")
def llm_status():
    """Check whether the LLM collaborator is configured and available."""
    has_key = bool(GEMINI_API_KEY.strip())

    sdk_available = False
    try:
        from google import genai  # noqa: F401
        sdk_available = True
    except ImportError:
        pass

    return {
        "llm_configured": has_key and sdk_available,
        "api_key_set": has_key,
        "sdk_installed": sdk_available,
        "model": GEMINI_MODEL,
        "classifier_mode": CLASSIFIER_MODE,
        "info": (
            "LLM active — low-confidence queries classified via AI, "
            "follow-up filtering and AI fallback enabled"
            if has_key and sdk_available
            else "LLM inactive — keyword classification only; follow-ups and "
                 "unrecognised queries return errors. "
                 "Set GEMINI_API_KEY env var and install google-genai."
        ),
    }
