"""Custom exceptions for the window limiter."""


class LimiterException(Exception):
    """Base class for limiter exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Limiter error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(LimiterException):
    """Raised when an identifier has no quota left in its current window.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, result=None, detail: str | None = None):
        self.result = result
        message = detail or "Rate limit exceeded."
        if result is not None:
            message += f" Window resets at {result.reset}."
        super().__init__(message)


class RetryExhaustedError(LimiterException):
    """Raised when optimistic retries gave up under write contention.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, identifier: str, attempts: int):
        self.identifier = identifier
        self.attempts = attempts
        super().__init__(
            f"Gave up on {identifier!r} after {attempts} conflicting attempts"
        )
