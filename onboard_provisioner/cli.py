"""Command line interface for the onboarding provisioner."""
from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .catalog import OnboardingCatalog, load_catalog
from .config import AppConfig, configure_logging, load_config
from .directory import open_directory
from .errors import ConfigurationError, ExternalServiceError
from .form import apply_changes, preview, reset_input
from .m365_client import M365Client, M365ClientError
from .models import EmployeeInput, Phase
from .orchestrator import ProvisioningOrchestrator

app = typer.Typer(help="Provision new employee accounts from the onboarding catalog.")

_CONFIG_OPTION_HELP = "Path to a specific settings file (overrides default)."
_CATALOG_OPTION_HELP = "Path to the onboarding catalog (overrides storage.catalog_file)."


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        config = load_config(config_path)
        configure_logging(config.logging.level)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    return config


def _load_catalog(config: AppConfig, catalog_path: Optional[Path]) -> OnboardingCatalog:
    try:
        return load_catalog(catalog_path or config.storage.catalog_file)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _employee_from_options(catalog: OnboardingCatalog, **values: Any) -> EmployeeInput:
    upn_domain = values.pop("upn_domain", None)
    changes: Dict[str, Any] = {key: value for key, value in values.items() if value is not None}
    if upn_domain:
        changes["allow_upn_override"] = True
        changes["upn_domain"] = upn_domain
    return apply_changes(reset_input(), changes, catalog)


def _confirm_with_operator(summary: str) -> bool:
    typer.echo(summary)
    return typer.confirm("Proceed?", default=False)


def _echo_progress(percent: int, phase: Phase) -> None:
    typer.echo(f"[{percent:3d}%] {phase.value.replace('_', ' ')}")


def _sign_in(config: AppConfig, stack: contextlib.ExitStack) -> Optional[M365Client]:
    if not config.m365.has_credentials:
        return None
    client = M365Client(config.m365)
    stack.callback(client.close)
    try:
        client.sign_in()
    except M365ClientError as exc:
        typer.echo(f"Microsoft 365 sign-in failed: {exc}", err=True)
    return client


@app.command("options")
def show_options(
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
    catalog_path: Optional[Path] = typer.Option(None, "--catalog", help=_CATALOG_OPTION_HELP),
) -> None:
    """List the companies, offices, departments and UPN domains an operator can pick."""

    config = _load_configuration(config_path)
    catalog = _load_catalog(config, catalog_path)

    for title, values in (
        ("Companies", [f"{name} ({domain})" for name, domain in catalog.companies.items()]),
        ("Offices", catalog.offices),
        ("Departments", catalog.departments),
        ("UPN domains", catalog.upn_domains),
    ):
        typer.echo(f"{title}:")
        for value in values:
            typer.echo(f"  - {value}")


@app.command("preview")
def show_preview(
    first_name: str = typer.Argument("", help="Employee first name."),
    last_name: str = typer.Argument("", help="Employee last name."),
    company: Optional[str] = typer.Option(None, "--company", help="Company name."),
    office: Optional[str] = typer.Option(None, "--office", help="Office name."),
    department: Optional[str] = typer.Option(None, "--department", help="Department name."),
    cloud_only: bool = typer.Option(False, "--cloud-only", help="Employee has no on-premises account."),
    upn_domain: Optional[str] = typer.Option(
        None, "--upn-domain", help="Explicit UPN domain (turns on the UPN override)."
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
    catalog_path: Optional[Path] = typer.Option(None, "--catalog", help=_CATALOG_OPTION_HELP),
) -> None:
    """Show the derived identity and default groups/licenses without provisioning."""

    config = _load_configuration(config_path)
    catalog = _load_catalog(config, catalog_path)
    employee = _employee_from_options(
        catalog,
        first_name=first_name,
        last_name=last_name,
        company=company,
        office=office,
        department=department,
        cloud_only=cloud_only,
        upn_domain=upn_domain,
    )
    typer.echo(json.dumps(preview(employee, catalog).to_dict(), indent=2))


@app.command("onboard")
def onboard_user(
    first_name: str = typer.Argument("", help="Employee first name."),
    last_name: str = typer.Argument("", help="Employee last name."),
    company: Optional[str] = typer.Option(None, "--company", help="Company name."),
    office: Optional[str] = typer.Option(None, "--office", help="Office name."),
    department: Optional[str] = typer.Option(None, "--department", help="Department name."),
    job_title: Optional[str] = typer.Option(None, "--title", help="Job title."),
    mobile: Optional[str] = typer.Option(None, "--mobile", help="Mobile phone number."),
    cloud_only: bool = typer.Option(False, "--cloud-only", help="Employee has no on-premises account."),
    upn_domain: Optional[str] = typer.Option(
        None, "--upn-domain", help="Explicit UPN domain (turns on the UPN override)."
    ),
    simulate: Optional[bool] = typer.Option(
        None,
        "--simulate/--live",
        help="Run without touching any directory (default comes from App.DemoModeDefault).",
    ),
    assume_yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    config_path: Optional[Path] = typer.Option(None, "--config", help=_CONFIG_OPTION_HELP),
    catalog_path: Optional[Path] = typer.Option(None, "--catalog", help=_CATALOG_OPTION_HELP),
) -> None:
    """Validate, confirm and provision a new employee."""

    config = _load_configuration(config_path)
    catalog = _load_catalog(config, catalog_path)
    employee = _employee_from_options(
        catalog,
        first_name=first_name,
        last_name=last_name,
        company=company,
        office=office,
        department=department,
        job_title=job_title,
        mobile=mobile,
        cloud_only=cloud_only,
        upn_domain=upn_domain,
    )
    simulate_mode = catalog.demo_mode_default if simulate is None else simulate

    with contextlib.ExitStack() as stack:
        session = None
        directory = None
        if not simulate_mode:
            session = _sign_in(config, stack)
            try:
                directory = open_directory(config, employee.cloud_only, session)
            except ExternalServiceError as exc:
                typer.echo(f"Error: {exc}", err=True)
                raise typer.Exit(code=1)
            if directory is not None and directory is not session:
                stack.callback(directory.close)

        orchestrator = ProvisioningOrchestrator(
            catalog,
            directory=directory,
            session=session,
            simulate=simulate_mode,
            confirm=(lambda summary: True) if assume_yes else _confirm_with_operator,
            progress=_echo_progress,
        )
        result = orchestrator.submit(employee)

    typer.echo(f"Status: {result.status.value}")
    if result.message:
        typer.echo(result.message)
    for phase in result.phases:
        line = f"  {phase.phase.value}: {phase.outcome.value}"
        typer.echo(f"{line} ({phase.detail})" if phase.detail else line)
    if result.temporary_credential:
        typer.echo(f"Temporary password (shown once): {result.temporary_credential}")

    if not result.ok:
        raise typer.Exit(code=1)


def run():
    app()


if __name__ == "__main__":
    run()
