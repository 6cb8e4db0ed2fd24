"""
LLM collaborator used by the query engine, backed by Google Gemini.

The engine talks to the model through five operations:

    classify                 query → {type, handler, confidence, reasoning}
    plan                     query → {extract: [...], filter: {...}}
    infer_transaction_types  query → ["CREATE_ORDER", ...]
    filter_records           (records, filter text) → [matching records]
    resolve_key              (term, known keys) → closest known key

Each operation returns the model's raw reply text.  Parsing and validation
belong to the caller (see the ``parse_*`` helpers below), so a stub that
returns canned text can stand in for Gemini in tests.

Every failure of the remote call surfaces as ``LLMUnavailable``; callers
decide whether that degrades to a rule-tier result or becomes an ``ERROR``
envelope.
"""

import asyncio
import json
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from report_query.config import (
    GEMINI_API_KEY,
    GEMINI_MODEL,
    LLM_MAX_RETRIES,
    LLM_TIMEOUT_SECONDS,
)
from report_query.errors import (
    FilterParseFailure,
    KeyResolutionFailure,
    LLMUnavailable,
    PlanParseFailure,
)
from report_query.logger import logger
from report_query.models import QueryPlan
from report_query.patterns import QueryPattern


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Drop markdown code-fence markers around a model reply."""
    return _FENCE_RE.sub("", text or "").strip()


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Extract the first valid JSON object from *text*.

    Handles plain JSON, markdown code-fenced JSON, and surrounding prose.
    """
    text = (text or "").strip()

    # 1. Direct parse
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    # 2. Markdown code block
    for pattern in (
        r"```json\s*\n?(.*?)\n?\s*```",
        r"```\s*\n?(.*?)\n?\s*```",
    ):
        m = re.search(pattern, text, re.DOTALL)
        if m:
            try:
                parsed = json.loads(m.group(1))
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                continue

    # 3. Find outermost { … } — balanced braces
    depth = 0
    start_idx = None
    for i, ch in enumerate(text):
        if ch == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start_idx is not None:
                try:
                    return json.loads(text[start_idx : i + 1])
                except json.JSONDecodeError:
                    start_idx = None

    return None


def extract_json_array(text: str) -> Optional[List[Any]]:
    """Parse a JSON array reply, falling back to the first ``[`` … last ``]``."""
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, list):
            return parsed
    except json.JSONDecodeError:
        pass

    start = cleaned.find("[")
    end = cleaned.rfind("]")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, list) else None


def parse_query_plan(text: str) -> QueryPlan:
    plan_dict = extract_json(text)
    if plan_dict is None:
        raise PlanParseFailure(f"Could not extract a query plan from: {(text or '')[:200]}")
    try:
        plan = QueryPlan.model_validate(plan_dict)
    except ValidationError as e:
        raise PlanParseFailure(f"Invalid query plan: {e.errors()[0]['msg']}") from e
    if not plan.extract:
        raise PlanParseFailure("Query plan names no fields to extract")
    return plan


def parse_filtered_records(text: str) -> List[Any]:
    records = extract_json_array(text)
    if records is None:
        raise FilterParseFailure(
            "Error processing filter. Please refine your query."
        )
    return records


def parse_type_list(text: str) -> List[str]:
    """Accept only a JSON array of strings; anything else is rejected."""
    values = extract_json_array(text)
    if values is None or not all(isinstance(v, str) for v in values):
        raise ValueError(f"Expected a JSON array of strings, got: {(text or '')[:200]}")
    return values


def parse_resolved_key(text: str, keys: Sequence[str]) -> str:
    """Accept a reply only if it names one of *keys*.

    Surrounding quotes and backticks are ignored; a case-insensitive match
    is accepted when it is unambiguous.
    """
    lines = strip_code_fences(text).splitlines()
    candidate = lines[0].strip().strip("`'\"").strip() if lines else ""
    if candidate in keys:
        return candidate

    folded = [k for k in keys if k.lower() == candidate.lower()]
    if len(folded) == 1:
        return folded[0]
    raise KeyResolutionFailure(
        f"Could not match '{candidate[:100]}' to a known key"
    )


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------

def _build_classify_prompt(query: str, patterns: Sequence[QueryPattern]) -> str:
    commands = "\n".join(
        f"{p.intent.value}: {', '.join(p.keywords)} (Description: {p.description})"
        for p in patterns
    )
    types = ", ".join(p.intent.value for p in patterns)
    return f"""You are a query classifier.  Given a user query, determine which of
these predefined commands it most closely matches:

AVAILABLE COMMANDS:
{commands}

User Query: "{query}"

Return a JSON response with this exact structure:
{{
  "type": "COMMAND_ID",
  "handler": "handlerFunction",
  "confidence": 0.95,
  "reasoning": "Why this command was selected"
}}

Rules:
- confidence should be between 0.0 and 1.0
- type should be one of: {types}
- If no good match (confidence < 0.3), use type "UNKNOWN" and handler "fallbackQuery"
- Be flexible with synonyms and variations
- Focus on the main intent of the query

Respond ONLY with the JSON object."""


def _build_plan_prompt(query: str) -> str:
    return f"""You are a JSON query planner.  Given a user's natural language
question about a transaction report, return a structured query plan.

Use this structure:
{{
  "extract": ["<field1>", "<field2>"],
  "filter": {{
    "<fieldName>": "<filterValue>"
  }}
}}

Query: "{query}"

Respond ONLY with the JSON object."""


def _build_type_inference_prompt(query: str, known_types: Sequence[str]) -> str:
    return f"""From this query, extract transaction types like CREATE_ORDER,
CHANGE_ORDER from this list:
[{', '.join(known_types)}]
Return only valid types as a JSON array.

Query: "{query}\""""


def _build_filter_prompt(records: List[Any], filter_query: str) -> str:
    return f"""You are a JSON filter engine.

Given:
- A JSON array of objects
- A human query like "where transactionType is CREATE_ORDER"

Filter and return only the matching records.

User Query: "{filter_query}"

JSON Input:
{json.dumps(records, indent=2, default=str)}

Return ONLY the filtered JSON array (valid JSON, no extra explanation)."""


def _build_resolve_key_prompt(term: str, keys: Sequence[str]) -> str:
    return f"""You are given a list of known data keys.  The user has typed a
vague or natural language term.  Match it to the closest key from the list.

Known Keys:
{', '.join(keys)}

User input: "{term}"

Return only the closest matching key."""


# ---------------------------------------------------------------------------
# Collaborator port
# ---------------------------------------------------------------------------

class LLMCollaborator:
    """Prompt-completion port.  Subclasses implement ``generate``."""

    name = "llm"

    async def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.0,
        max_output_tokens: int = 1024,
    ) -> str:
        raise NotImplementedError

    async def classify(self, query: str, patterns: Sequence[QueryPattern]) -> str:
        return await self.generate(
            _build_classify_prompt(query, patterns),
            temperature=0.3,
            max_output_tokens=512,
        )

    async def plan(self, query: str) -> str:
        return await self.generate(
            _build_plan_prompt(query),
            temperature=0.6,
            max_output_tokens=512,
        )

    async def infer_transaction_types(self, query: str, known_types: Sequence[str]) -> str:
        return await self.generate(
            _build_type_inference_prompt(query, known_types),
            max_output_tokens=256,
        )

    async def filter_records(self, records: List[Any], filter_query: str) -> str:
        return await self.generate(
            _build_filter_prompt(records, filter_query),
            temperature=0.6,
            max_output_tokens=8192,
        )

    async def resolve_key(self, term: str, keys: Sequence[str]) -> str:
        return await self.generate(
            _build_resolve_key_prompt(term, keys),
            max_output_tokens=512,
        )


# ---------------------------------------------------------------------------
# Gemini implementation
# ---------------------------------------------------------------------------

# Lazy-load the Gemini SDK so the rest of the service works even when
# google-genai is not installed.
_genai_client = None


def _get_genai_client(api_key: str):
    global _genai_client
    if _genai_client is None:
        try:
            from google import genai
        except ImportError:
            logger.warning(
                "google-genai is not installed. "
                "Run: pip install google-genai"
            )
            return None
        _genai_client = genai.Client(api_key=api_key)
    return _genai_client


class GeminiCollaborator(LLMCollaborator):
    name = "gemini"

    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        timeout: float = LLM_TIMEOUT_SECONDS,
        max_retries: int = LLM_MAX_RETRIES,
    ):
        self.api_key = api_key.strip()
        self.model = model
        self.timeout = timeout
        self.max_retries = max_retries

    async def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.0,
        max_output_tokens: int = 1024,
    ) -> str:
        client = _get_genai_client(self.api_key)
        if client is None:
            raise LLMUnavailable("Gemini client is not available")

        from google.genai import types

        config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )

        loop = asyncio.get_running_loop()
        for attempt in range(self.max_retries + 1):
            start = loop.time()
            try:
                response = await asyncio.wait_for(
                    client.aio.models.generate_content(
                        model=self.model,
                        contents=prompt,
                        config=config,
                    ),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError as e:
                logger.error(
                    "[LLM] Gemini call timed out after %.2fs", loop.time() - start,
                )
                raise LLMUnavailable("LLM request timed out") from e
            except Exception as e:
                if "429" in str(e) and attempt < self.max_retries:
                    wait = 4 * (attempt + 1)  # 4s, 8s backoff
                    logger.warning(
                        "[LLM] Rate limited (attempt %d/%d), retrying in %ds...",
                        attempt + 1, self.max_retries + 1, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                logger.error(
                    "[LLM] Gemini call failed after %.2fs: %s", loop.time() - start, e,
                )
                raise LLMUnavailable(f"LLM request failed: {e}") from e

            raw_text = response.text or ""
            logger.info(
                "[LLM] Gemini responded in %.2fs (%d chars)",
                loop.time() - start, len(raw_text),
            )
            logger.debug("[LLM] Raw response: %s", raw_text[:500])
            return raw_text

        raise LLMUnavailable("LLM retries exhausted")


def build_default_collaborator() -> Optional[LLMCollaborator]:
    """Gemini collaborator when an API key is configured, else ``None``."""
    if not GEMINI_API_KEY.strip():
        logger.debug("No GEMINI_API_KEY — LLM collaborator disabled")
        return None
    return GeminiCollaborator()
