"""Error taxonomy shared by every request-facing component.

Each failure carries an ``ErrorKind``; the Flask layer maps the kind to an
HTTP status and renders ``{"message": ...}``. Anything outside the taxonomy is
an internal error: logged in full, answered with a generic 500.
"""

import logging
from enum import Enum

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    BAD_REQUEST = 400
    FORBIDDEN = 403
    NOT_FOUND = 404
    INTERNAL = 500

    @property
    def status(self) -> int:
        return self.value


class ApiError(Exception):
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status(self) -> int:
        return self.kind.status


class BadRequestError(ApiError):
    kind = ErrorKind.BAD_REQUEST


class ValidationError(BadRequestError):
    """Raised when caller input cannot be normalized to the expected type."""

    def __init__(self, message: str, field: str = None, received_value=None):
        super().__init__(message)
        self.field = field
        self.received_value = received_value


class ForbiddenError(ApiError):
    kind = ErrorKind.FORBIDDEN


class NotFoundError(ApiError):
    kind = ErrorKind.NOT_FOUND


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        payload = {"message": error.message}
        field = getattr(error, "field", None)
        if field:
            payload["field"] = field
        return jsonify(payload), error.status

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.exception("Unhandled error: %s", error)
        return jsonify({"message": "Internal server error."}), 500
