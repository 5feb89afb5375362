"""Exception hierarchy for machine execution.

Only ConfigurationError is allowed to escape the executor; every other
error is caught at the path boundary and reported on the path itself.
"""


class DygramError(Exception):
    """Base class for all engine errors."""

    pass


class ConfigurationError(DygramError):
    """Raised when a snapshot is malformed or references something that does not exist."""

    pass


class ConditionEvaluationError(DygramError):
    """Raised internally when a condition cannot be evaluated. Always recovered as False."""

    pass


class ResourceLimitExceeded(DygramError):
    """Raised when a path exceeds steps, node invocations, timeout, or loops."""

    def __init__(self, message: str, kind: str, limit: int | float | None = None):
        super().__init__(message)
        self.kind = kind
        self.limit = limit


class EffectApplicationError(DygramError):
    """Raised when an effect chosen for a path cannot be applied."""

    pass


class OracleInvocationError(DygramError):
    """Raised when the oracle fails or cannot produce a decision."""

    pass


class MutationValidationError(DygramError):
    """Raised when a machine replacement fails structural validation."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []
