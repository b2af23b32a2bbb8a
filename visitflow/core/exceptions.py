"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFound(AppException):
    """Referenced id does not exist."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class SlotUnavailable(AppException):
    """Requested doctor slot is already held by another appointment."""

    def __init__(self, message: str = "Slot already booked"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class InvalidState(AppException):
    """Object is not in a state that permits the operation."""

    def __init__(self, message: str = "Operation not allowed in current state"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class InvalidTransition(AppException):
    """Requested status change is not a legal edge."""

    def __init__(self, message: str = "Invalid status transition"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class VerificationFailed(AppException):
    """Gateway result cannot be attributed to the claimed payment."""

    def __init__(self, message: str = "Payment verification failed"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class GatewayUnavailable(AppException):
    """Payment gateway could not be reached."""

    def __init__(self, message: str = "Payment gateway unavailable"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)


class GatewayRejected(AppException):
    """Payment gateway refused a request the engine made, e.g. an unknown order."""

    def __init__(self, message: str = "Payment gateway rejected the request"):
        """Initialize with 502 status code."""
        super().__init__(message, status_code=502)
