"""
Typed HTTP errors raised by the service modules.

They are plain HTTPException subclasses so they travel to the exception
handlers in main.py untouched.
"""

from typing import List, Optional

from fastapi import HTTPException


class BadRequestError(HTTPException):
    def __init__(self, detail: str, errors: Optional[List[str]] = None):
        super().__init__(status_code=400, detail=detail)
        self.errors = errors


class ValidationError(BadRequestError):
    """Malformed or out-of-range input."""

    def __init__(self, detail: str, errors: Optional[List[str]] = None):
        super().__init__(detail, errors=errors or [detail])


class InvalidStateError(BadRequestError):
    """An operation attempted while the resource is in the wrong state."""
    pass


class UnauthorizedError(HTTPException):
    def __init__(self, detail: str = "Authentication failed"):
        super().__init__(status_code=401, detail=detail)


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(status_code=403, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)


class ConflictError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)
