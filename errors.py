"""
Error types shared by the API and the Python client.

Each error carries the HTTP status the API answers with, so route code can
raise domain errors and let the exception handler in main.py render them.
"""
from typing import Dict, Optional


GENERIC_MESSAGE = "Something went wrong. Please try again."


class FoodBridgeError(Exception):
    status_code = 400

    def __init__(self, message: Optional[str] = None, errors: Optional[Dict[str, str]] = None):
        self.message = message or GENERIC_MESSAGE
        self.errors = errors or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(FoodBridgeError):
    """Field-level input problems. `errors` maps field name to message."""
    status_code = 422


class InvalidStateError(FoodBridgeError):
    """A donation transition was attempted from the wrong status."""
    status_code = 409


class PermissionDeniedError(FoodBridgeError):
    status_code = 403


class NotFoundError(FoodBridgeError):
    status_code = 404


class AuthError(FoodBridgeError):
    """Missing, invalid or revoked credentials."""
    status_code = 401


class NetworkError(FoodBridgeError):
    # Client side only: the request never got an HTTP answer.
    status_code = 0


_BY_STATUS = {
    401: AuthError,
    403: PermissionDeniedError,
    404: NotFoundError,
    409: InvalidStateError,
    422: ValidationError,
}


def error_for_status(status_code: int, message: Optional[str] = None,
                     errors: Optional[Dict[str, str]] = None) -> FoodBridgeError:
    cls = _BY_STATUS.get(status_code, FoodBridgeError)
    err = cls(message, errors)
    err.status_code = status_code
    return err
