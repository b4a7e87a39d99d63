class AuditError(Exception):
    pass


class RateLimitError(AuditError):
    """Raised when the code host refuses a request because of rate limiting."""

    def __init__(self, message: str, reset_at=None):
        super().__init__(message)
        self.reset_at = reset_at


class NotFoundError(AuditError):
    pass


class GraphWalkError(AuditError):
    pass


class IntegrityError(AuditError):
    """A row that must exist is gone, or an operation was rejected by the store."""
