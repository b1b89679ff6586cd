"""
Hard errors for the action governor.

Policy refusals (too early, vetoed, over budget, blocked by the safety
pipeline) are returned as Rejection values and never raised. Only
infrastructure faults, downstream executor failures and invariant
violations are exceptions.
"""


class GovernorError(Exception):
    """Base class for all governor errors."""

    def __init__(self, message: str, action_id: str = None):
        self.message = message
        self.action_id = action_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.action_id:
            return f"[{self.action_id}] {self.message}"
        return self.message


class StoreUnavailableError(GovernorError):
    """The action store could not be read or written."""


class ExecutorError(GovernorError):
    """The executor failed or timed out; the action remains retryable."""


class LedgerInvariantError(GovernorError):
    """A spend commit would break a ledger invariant. Always a programming error."""


class IllegalTransitionError(GovernorError):
    """A status change that is not QUEUED -> terminal was attempted."""
