# Overview: Shared helpers for route modules; service wiring and error responses.

from __future__ import annotations

from flask import current_app, g, jsonify, request

from ..errors import CSMSError, ValidationError
from ..extensions import GATEWAY_EXTENSION_KEY, db
from ..services import Services, build_services
from ..time_utils import parse_iso_datetime


def get_services() -> Services:
    """Per-request service graph bound to the request's session."""
    services = g.get("csms_services")
    if services is None:
        services = build_services(
            db.session,
            current_app.extensions[GATEWAY_EXTENSION_KEY],
            current_app.config,
        )
        g.csms_services = services
    return services


def error_response(exc: CSMSError):
    return jsonify(exc.to_dict()), exc.status_code


def internal_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


def json_body():
    payload = request.get_json(silent=True)
    if payload is None and request.data:
        raise ValidationError("Request body must be valid JSON")
    return payload


def arg_int(name: str) -> int | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def arg_datetime(name: str):
    raw = request.args.get(name)
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


def arg_bool(name: str, default: bool = False) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")
