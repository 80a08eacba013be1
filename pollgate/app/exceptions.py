"""Custom exceptions for pollgate."""


class PollGateException(Exception):
    """Base class for pollgate exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class NotFoundError(PollGateException):
    """Raised when a resource key is unknown.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404

    def __init__(self, resource_id: str | None = None, message: str = "Event not found"):
        self.resource_id = resource_id
        super().__init__(message)


class InvalidArgumentError(PollGateException):
    """Raised when request input is missing or malformed.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, message: str = "Invalid argument"):
        super().__init__(message)


class WaitTimeoutError(PollGateException):
    """Raised when a long-poll wait reaches its deadline without a change.

    This is a defined outcome, not a failure. Maps to HTTP 408.
    """
    status_code = 408

    def __init__(self, resource_id: str | None = None, message: str = "Request timed out"):
        self.resource_id = resource_id
        super().__init__(message)


class RateLimitedError(PollGateException):
    """Raised when admission control denies a request.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        algorithm: str,
        limit: int,
        retry_after: int,
        detail: str | None = None,
    ):
        self.algorithm = algorithm
        self.limit = limit
        self.retry_after = retry_after
        message = detail or f"Rate limit exceeded. Retry in {retry_after} seconds."
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API response format."""
        return {
            "error": "Too Many Requests",
            "message": self.message,
            "algorithm": self.algorithm,
            "limit": self.limit,
            "retryAfter": self.retry_after,
        }


class ServiceUnavailableError(PollGateException):
    """Raised when the shared rate-limit store cannot be reached.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(
        self,
        message: str = "Distributed rate limiting is not available (Redis not connected)",
    ):
        super().__init__(message)
