"""
Error kinds raised by the store layer.

Route handlers never build error responses for these themselves; the
exception handlers registered in main.py turn them into JSON responses.
"""
from typing import Dict, Optional


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class Unauthorized(ShopError):
    status_code = 401


class NotFound(ShopError):
    status_code = 404


class ValidationFailure(ShopError):
    status_code = 400

    def __init__(self, errors: Dict[str, str], message: Optional[str] = None):
        super().__init__(message or ", ".join(errors.values()), errors)


class Conflict(ShopError):
    status_code = 409


class InternalFailure(ShopError):
    status_code = 500
