# Overview: Route decorators that map service errors to JSON responses.

from functools import wraps
from flask import current_app, jsonify

from .extensions import db
from .services.return_service import AlreadyReturnedError
from .services.stock_service import StockError
from .validation import ConflictError, NotFoundError, ValidationError

# Most specific first.
ERROR_STATUS = (
    (AlreadyReturnedError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StockError, 400),
    (ValidationError, 400),
)


def error_response(exc: Exception, status: int):
    body = {"error": str(exc), "code": getattr(exc, "code", "ERROR")}
    body.update(getattr(exc, "details", None) or {})
    return jsonify(body), status


def handle_service_errors(f):
    """
    Translate service exceptions into {"error", "code", ...details} responses.

    The session is rolled back on every error. Unexpected exceptions are logged
    with a traceback and answered with a generic 500.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except Exception as exc:
            db.session.rollback()
            for exc_type, status in ERROR_STATUS:
                if isinstance(exc, exc_type):
                    current_app.logger.info("%s rejected: %s (%s)", f.__name__, exc, getattr(exc, "code", ""))
                    return error_response(exc, status)
            current_app.logger.exception("Unhandled error in %s", f.__name__)
            return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500

    return decorated_function
