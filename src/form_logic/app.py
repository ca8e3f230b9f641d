from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .rules_engine import is_valid_email, load_form_payload

APP_NAME = "form-logic"


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def create_form_logic_app() -> Flask:
    app = Flask(__name__)
    _configure_observability(app, APP_NAME)
    _configure_error_handlers(app)

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/evaluate")
    def evaluate() -> Any:
        try:
            engine, form_data = load_form_payload(_json_body())
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        return jsonify(engine.evaluate(form_data).to_dict())

    @app.post("/api/trace")
    def trace() -> Any:
        try:
            engine, form_data = load_form_payload(_json_body())
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400
        traced = engine.trace(form_data)
        return jsonify({**traced.output.to_dict(), "steps": traced.steps})

    @app.post("/api/validate-email")
    def validate_email() -> Any:
        email = _json_body().get("email")
        return jsonify({"email": email, "valid": is_valid_email(email)})

    @app.post("/api/submissions/check")
    def check_submission() -> Any:
        try:
            engine, form_data = load_form_payload(_json_body())
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        decision = engine.check_submission(form_data)
        if not decision.accepted:
            app.logger.info(
                "submission_check_failed",
                extra={"reason_code": decision.reason_code, "invalid_fields": decision.invalid_fields},
            )
            return (
                jsonify(
                    {
                        "accepted": False,
                        "reasonCode": decision.reason_code,
                        "invalidFields": decision.invalid_fields,
                    }
                ),
                422,
            )

        app.logger.info("submission_check_passed", extra={"field_count": len(decision.data)})
        return jsonify({"accepted": True, "data": decision.data})

    return app
