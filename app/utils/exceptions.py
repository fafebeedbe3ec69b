class CircleException(Exception):
    """Base exception for the application"""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", code: str = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class AuthenticationError(CircleException):
    """Authentication related errors"""
    status_code = 401
    code = "AUTHENTICATION_FAILED"


class AuthorizationError(CircleException):
    """Authorization related errors (including blocked interactions)"""
    status_code = 403
    code = "FORBIDDEN"


class ValidationError(CircleException):
    """Validation related errors"""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(CircleException):
    """Resource not found errors"""
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(CircleException):
    """The target is already in the requested state"""
    status_code = 409
    code = "CONFLICT"


class GoneError(CircleException):
    """The resource existed but is no longer actionable"""
    status_code = 410
    code = "GONE"
