"""
API error kinds.

Every error is an HTTPException so route and service code can raise the same
objects; main.py renders them as {"error": "<message>"}.
"""
from fastapi import HTTPException


class APIError(HTTPException):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: str = None, headers=None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail, headers=headers)


class ValidationError(APIError):
    status_code = 400
    default_detail = "Invalid request"


class InvalidFormat(ValidationError):
    default_detail = "Format not available for this book"


class InsufficientStock(ValidationError):
    default_detail = "Insufficient stock"


class InvalidState(APIError):
    status_code = 400
    default_detail = "Invalid order state"


class Unauthorized(APIError):
    status_code = 401
    default_detail = "Could not validate credentials"

    def __init__(self, detail: str = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class Forbidden(APIError):
    status_code = 403
    default_detail = "Insufficient permissions"


class AccessExpired(Forbidden):
    default_detail = "Access has expired"


class NotFound(APIError):
    status_code = 404
    default_detail = "Not found"


class Conflict(APIError):
    status_code = 409
    default_detail = "Already exists"


class InternalError(APIError):
    status_code = 500
    default_detail = "Internal server error"
