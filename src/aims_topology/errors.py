class AimsError(Exception):
    """Base class for all errors raised while resolving account relationships."""


class TransportError(AimsError):
    """Raised when a request to the AIMS service could not be completed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ResponseValidationError(AimsError):
    """Raised when a successful response is missing a field the caller depends on."""


class HierarchyDepthError(TransportError):
    """Raised when an upward walk revisits an account or exceeds its depth budget."""


class AggregationError(AimsError):
    """Raised when fetching users for one account in a fan-out fails.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, account_id: str, message: str | None = None):
        super().__init__(message or f"Failed to fetch users for account {account_id}")
        self.account_id = account_id
