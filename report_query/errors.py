"""
Error taxonomy for the query engine.

None of these escape a submitted query: the dispatcher and the session turn
them into ``ERROR`` envelopes.  Two failure modes are deliberately not
exceptions:

- an unrecognised query is classified ``UNKNOWN`` and routed to the fallback
  handler;
- a document without the transaction report root yields an empty result with
  ``metadata.error`` set.
"""


class QueryEngineError(Exception):
    """Base class for query engine failures."""


class UnknownHandler(QueryEngineError):
    """A classification named a handler that is not in the registry."""

    def __init__(self, handler_name: str):
        super().__init__(f"Unknown handler: {handler_name}")
        self.handler_name = handler_name


class DepthExceeded(QueryEngineError):
    """Flattening went deeper than the configured bound (cyclic input)."""

    def __init__(self, max_depth: int, path: str):
        super().__init__(
            f"Document nesting exceeds {max_depth} levels at '{path or '<root>'}'"
        )
        self.max_depth = max_depth
        self.path = path


class LLMUnavailable(QueryEngineError):
    """No LLM collaborator is configured, or the remote call failed."""


class PlanParseFailure(QueryEngineError):
    """The LLM reply to a planning request was not a usable query plan."""


class FilterParseFailure(QueryEngineError):
    """The LLM reply to a free-text filter request was not a JSON array."""


class NoActiveBase(QueryEngineError):
    """A follow-up was issued with no base result in the session."""


class SessionBusy(QueryEngineError):
    """A query was submitted while another one is still in flight."""


class KeyResolutionFailure(QueryEngineError):
    """The LLM reply to a key resolution request named no known key."""
