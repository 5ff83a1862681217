class CommissionError(Exception):
    """base class for commission engine failures."""


class NotFoundError(CommissionError, LookupError):
    """a referenced plot, profile or wallet row does not exist."""


class InvalidStateError(CommissionError, ValueError):
    """the row exists but cannot be processed in its current state."""


class StoreFailure(CommissionError):
    """the backing store failed to read or write."""
