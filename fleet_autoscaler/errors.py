class AutoscalerError(Exception):
    """Base class for errors raised by the autoscaler."""


class StateConflictError(AutoscalerError):
    """Raised when a state document could not be updated after all conditional write retries."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Gave up updating state document {key} after {attempts} conflicting writes")
        self.key = key
        self.attempts = attempts


class StrategyResultError(AutoscalerError):
    """Raised when a sizing strategy returns results that break its contract."""
