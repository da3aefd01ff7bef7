"""
Exception hierarchy for the vote gate.

Security denials (rate limited, blocked, challenge rejected) are NOT
exceptions; they are returned as typed decision values. Only malformed input
and infrastructure failures are raised, and infrastructure failures are
always resolved at the component boundary that observed them.
"""


class PollGuardError(Exception):
    """Base class for all gate errors."""


class GateValidationError(PollGuardError, ValueError):
    """A vote attempt is missing required fields and was rejected before scoring."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class InfrastructureError(PollGuardError):
    """A backing store could not serve the request."""


class StoreUnavailableError(InfrastructureError):
    """The store is unreachable or returned an unexpected failure."""


class StoreContentionError(InfrastructureError):
    """An optimistic-concurrency write kept losing the race and gave up."""
