"""Flask JSON API backing the onboarding form."""
from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from flask import Flask, current_app, jsonify, request

from .catalog import OnboardingCatalog, load_catalog
from .config import AppConfig, ensure_default_config, load_config, to_bool
from .directory import open_directory
from .errors import (
    ConflictError,
    ExternalServiceError,
    PreconditionError,
    ValidationError,
)
from .form import apply_change, apply_changes, preview, reset_input
from .m365_client import M365Client, M365ClientError
from .models import EmployeeInput, ProvisioningResult, ProvisioningStatus
from .orchestrator import ProvisioningOrchestrator


_SESSION_KEY = "onboard_m365_session"


def create_app(
    config_path: Optional[Path | str] = None,
    catalog_path: Optional[Path | str] = None,
) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    ensure_default_config(resolved_config_path)
    config = load_config(resolved_config_path)
    catalog = load_catalog(Path(catalog_path) if catalog_path else config.storage.catalog_file)

    app = Flask(__name__)
    app.config["CONFIG_PATH"] = resolved_config_path
    app.config["APP_CONFIG"] = config
    app.config["CATALOG"] = catalog
    app.extensions[_SESSION_KEY] = None

    register_routes(app)
    return app


def _catalog() -> OnboardingCatalog:
    return current_app.config["CATALOG"]


def _settings() -> AppConfig:
    return current_app.config["APP_CONFIG"]


def _employee_from_payload(payload: Dict[str, Any], catalog: OnboardingCatalog) -> EmployeeInput:
    values = payload.get("employee") or {}
    if not isinstance(values, dict):
        raise ValueError("'employee' must be an object.")
    return apply_changes(reset_input(), values, catalog)


def _status_code(result: ProvisioningResult) -> int:
    if result.status == ProvisioningStatus.VALIDATION_FAILED or isinstance(
        result.error, ValidationError
    ):
        return 422
    if isinstance(result.error, ConflictError):
        return 409
    if isinstance(result.error, PreconditionError):
        return 412
    if isinstance(result.error, ExternalServiceError):
        return 502
    if result.status == ProvisioningStatus.FAILED:
        return 500
    return 200


def _error(message: str, status: int) -> Tuple[Any, int]:
    return jsonify({"error": message}), status


def register_routes(app: Flask) -> None:
    """Attach all API routes to the provided Flask app."""

    @app.get("/api/options")
    def options():
        catalog = _catalog()
        return jsonify(
            {
                "companies": [
                    {"name": name, "domain": domain} for name, domain in catalog.companies.items()
                ],
                "offices": list(catalog.offices),
                "departments": list(catalog.departments),
                "upn_domains": list(catalog.upn_domains),
                "demo_mode_default": catalog.demo_mode_default,
            }
        )

    @app.post("/api/preview")
    def preview_employee():
        payload = request.get_json(silent=True) or {}
        catalog = _catalog()
        try:
            employee = _employee_from_payload(payload, catalog)
            change = payload.get("change")
            if change:
                employee = apply_change(employee, str(change.get("field")), change.get("value"), catalog)
        except (ValueError, AttributeError) as exc:
            return _error(str(exc), 400)
        return jsonify(preview(employee, catalog).to_dict())

    @app.post("/api/session/sign-in")
    def sign_in():
        settings = _settings()
        try:
            session = current_app.extensions.get(_SESSION_KEY) or M365Client(settings.m365)
            session.sign_in()
        except M365ClientError as exc:
            current_app.logger.warning("Microsoft 365 sign-in failed: %s", exc)
            return _error(str(exc), 502)
        current_app.extensions[_SESSION_KEY] = session
        return jsonify({"signed_in": True})

    @app.post("/api/onboard")
    def onboard():
        payload = request.get_json(silent=True) or {}
        catalog = _catalog()
        try:
            employee = _employee_from_payload(payload, catalog)
        except (ValueError, AttributeError) as exc:
            return _error(str(exc), 400)

        simulate = payload.get("simulate")
        simulate_mode = catalog.demo_mode_default if simulate is None else to_bool(simulate)
        confirmed = to_bool(payload.get("confirmed"))
        session = current_app.extensions.get(_SESSION_KEY)

        with contextlib.ExitStack() as stack:
            directory = None
            if not simulate_mode:
                try:
                    directory = open_directory(_settings(), employee.cloud_only, session)
                except ExternalServiceError as exc:
                    current_app.logger.error("Unable to open directory: %s", exc)
                    return _error(str(exc), 502)
                if directory is not None and directory is not session:
                    stack.callback(directory.close)

            orchestrator = ProvisioningOrchestrator(
                catalog,
                directory=directory,
                session=session,
                simulate=simulate_mode,
                confirm=lambda summary: confirmed,
            )
            result = orchestrator.submit(employee)

        current_app.logger.info(
            "Onboarding submit for %s finished with status %s.",
            result.identity.account_handle or "<blank>",
            result.status.value,
        )
        return jsonify(result.to_dict()), _status_code(result)


__all__ = ["create_app", "register_routes"]
