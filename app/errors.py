# =============================================================================
# Error Taxonomy — Typed Failures Raised by the Engine
# =============================================================================
#
# The batch pipeline and the interactive path react differently to the
# same failure (retry-and-skip versus a user-facing message), so failures
# are raised as distinct types and each caller decides the policy.
#
# Not everything unusual is an exception here:
#   - An ambiguous query is classified as Content, never an error.
#   - A malformed date argument is treated as absent by the argument
#     adapters (see services/financial_tools.py).
#   - Hitting the orchestration iteration cap is the CAPPED_OUT terminal
#     state of the loop, reported separately from ERRORED.
# =============================================================================


class EngineError(Exception):
    """Base class for all errors raised by the retrieval engine."""


class ProviderError(EngineError):
    """The embedding provider call failed (network, quota, bad response)."""


class StoreError(EngineError):
    """A database call failed or timed out."""


class FunctionNotFoundError(EngineError):
    """The model selected a function name that is not in the catalog."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Function '{name}' is not in the catalog")
        self.name = name


class ToolTimeoutError(EngineError):
    """A model decision or tool invocation exceeded its wall-clock budget."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"{operation} timed out after {timeout_seconds:g} seconds"
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class ReadOnlyQueryError(EngineError):
    """A free-form query was rejected because it is not a single SELECT."""
