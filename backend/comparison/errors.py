"""Error taxonomy for the comparison core.

Only InvalidRequestError and DuplicateRequestError are raised to callers of
the core entry points. TargetError and TargetCancelledError describe a single
target's failure; they are recorded in that target's state and never abort
sibling targets.
"""


class ComparisonError(Exception):
    """Base class for all comparison errors."""


class InvalidRequestError(ComparisonError, ValueError):
    """Raised when a request or target list is malformed. Nothing was started."""


class DuplicateRequestError(ComparisonError):
    """Raised when an aggregation is already tracked for a request id."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Aggregation already tracked for request '{request_id}'")
        self.request_id = request_id


class TargetError(ComparisonError):
    """One target's invocation failed.

    Attributes:
        target_id: The target whose invocation failed.
        message: Human-readable failure description.
    """

    def __init__(self, target_id: str, message: str) -> None:
        super().__init__(message)
        self.target_id = target_id
        self.message = message


class TargetCancelledError(TargetError):
    """A target was stopped because its logical request was cancelled."""

    def __init__(self, target_id: str, message: str = "Request cancelled") -> None:
        super().__init__(target_id, message)


class SelectionError(ComparisonError, ValueError):
    """Raised when a target selection is invalid (unknown ids or bad count)."""


class PromptModificationImportError(ComparisonError, ValueError):
    """Raised when imported prompt modifications are not valid JSON."""
