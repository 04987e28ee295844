"""
Exceptions shared by the request handlers.
"""


class ApiError(Exception):
    """Request-level failure carrying the HTTP status to report."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Unauthorized(ApiError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, 401)


class Forbidden(ApiError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, 403)


class NotFound(ApiError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, 404)
