import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from backoffice.extensions import db

logger = logging.getLogger(__name__)


class BackofficeError(Exception):
    """Base for errors that are surfaced verbatim to the caller."""

    status_code = 500
    default_message = "Server error"

    def __init__(self, message=None, status_code=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"success": False, "message": self.message}


class ValidationError(BackofficeError):
    status_code = 400
    default_message = "Invalid request"


class AuthenticationError(BackofficeError):
    status_code = 401
    default_message = "Unauthorized"


class PermissionDeniedError(BackofficeError):
    status_code = 403
    default_message = "You do not have permission to perform this action"


class NotFoundError(BackofficeError):
    status_code = 404
    default_message = "Not found"


class ExpiredError(NotFoundError):
    default_message = "This link has expired"


class ConflictError(BackofficeError):
    status_code = 409
    default_message = "Staff member has conflicting appointment at this time"


class InvalidStateError(BackofficeError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class InvalidTransitionError(InvalidStateError):
    default_message = "Invalid status transition"


class PolicyViolationError(BackofficeError):
    status_code = 400
    default_message = "Not allowed by booking policy"


class SettlementError(BackofficeError):
    status_code = 400
    default_message = "Payment could not be settled"


def register_error_handlers(app):
    @app.errorhandler(BackofficeError)
    def handle_backoffice_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            logger.error("Unhandled backoffice error: %s", error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        return jsonify({"success": False, "message": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        db.session.rollback()
        app.logger.exception("Unexpected error: %s", error)
        return jsonify({"success": False, "message": "Server error"}), 500
