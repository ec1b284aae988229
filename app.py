from __future__ import annotations

from typing import Any, Mapping, Optional

from flask import Flask, jsonify

from config import Config
from routes.database_routes import database_bp
from routes.fee_routes import fee_bp
from routes.payment_routes import payment_bp
from utils.context import FeeContext, open_context
from utils.errors import (
    FeeStoreError,
    InvalidAmount,
    NotFound,
    NotInitialized,
    QueryFailed,
    UnsupportedFormat,
)

_STATUS = (
    (InvalidAmount, 400),
    (UnsupportedFormat, 400),
    (NotFound, 404),
    (NotInitialized, 503),
    (QueryFailed, 500),
)


def _error_response(exc: Exception, status: int):
    return jsonify({"ok": False, "error": str(exc)}), status


def create_app(
    config_object: Any = Config,
    overrides: Optional[Mapping[str, Any]] = None,
    context: Optional[FeeContext] = None,
) -> Flask:
    """Build the Flask app and the single FeeContext it serves from."""
    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)
    app.json.sort_keys = bool(app.config.get("JSON_SORT_KEYS", False))

    if context is None:
        context = open_context(app.config)
    app.extensions["fee_context"] = context

    app.register_blueprint(fee_bp)
    app.register_blueprint(payment_bp)
    app.register_blueprint(database_bp)

    @app.errorhandler(FeeStoreError)
    def _handle_fee_error(exc: FeeStoreError):
        for cls, status in _STATUS:
            if isinstance(exc, cls):
                if status >= 500:
                    app.logger.error("Storage failure: %s", exc)
                return _error_response(exc, status)
        app.logger.error("Unhandled fee store error: %s", exc)
        return _error_response(exc, 500)

    @app.errorhandler(ValueError)
    def _handle_value_error(exc: ValueError):
        return _error_response(exc, 400)

    @app.get("/health")
    def health():
        return jsonify({"ok": True, "backend": context.adapter.backend})

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
