"""Submit-time validation, confirmation and the ordered provisioning phases."""
from __future__ import annotations

import contextlib
import logging
import secrets
import string
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from .access import resolve_access
from .catalog import OnboardingCatalog
from .directory import Directory, IdentitySession
from .errors import (
    ConflictError,
    ExternalServiceError,
    PreconditionError,
    ProvisioningError,
    ValidationError,
)
from .identity import derive_identity
from .models import (
    DerivedIdentity,
    EmployeeInput,
    OrchestratorState,
    Phase,
    PhaseOutcome,
    PhaseResult,
    ProvisioningResult,
    ProvisioningStatus,
)


ConfirmCallback = Callable[[str], bool]
ProgressCallback = Callable[[int, Phase], None]

_SUBMIT_LOCK = threading.Lock()
_PASSWORD_SYMBOLS = "!@#$%^&*-_=+?"
_TERMINAL_STATUS = {
    OrchestratorState.VALIDATION_FAILED: ProvisioningStatus.VALIDATION_FAILED,
    OrchestratorState.CANCELLED: ProvisioningStatus.CANCELLED,
    OrchestratorState.SIMULATED: ProvisioningStatus.SIMULATED,
    OrchestratorState.SUCCEEDED: ProvisioningStatus.SUCCEEDED,
    OrchestratorState.FAILED: ProvisioningStatus.FAILED,
}

logger = logging.getLogger(__name__)


def generate_temporary_password(length: int = 16) -> str:
    """Random password containing upper, lower, digit and symbol characters."""

    if length < 8:
        raise ValueError("Temporary passwords must be at least 8 characters long.")
    pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, _PASSWORD_SYMBOLS]
    alphabet = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def missing_fields(
    employee: EmployeeInput, identity: DerivedIdentity, catalog: OnboardingCatalog
) -> List[str]:
    """Labels of every required field that is blank or not a configured choice."""

    missing: List[str] = []
    if not employee.first_name.strip():
        missing.append("First Name")
    if not employee.last_name.strip():
        missing.append("Last Name")
    if not identity.primary_email:
        missing.append("Email")
    if employee.office not in catalog.offices:
        missing.append("Office")
    if employee.company not in catalog.companies:
        missing.append("Company")
    if employee.department not in catalog.departments:
        missing.append("Department")
    return missing


def build_account_attributes(
    employee: EmployeeInput, catalog: OnboardingCatalog
) -> Dict[str, str]:
    attributes = {
        **catalog.office_attributes(employee.office),
        "givenName": " ".join(employee.first_name.split()),
        "sn": " ".join(employee.last_name.split()),
        "displayName": employee.display_name,
        "company": employee.company,
        "physicalDeliveryOfficeName": employee.office,
        "department": employee.department,
        "title": employee.job_title.strip(),
        "mobile": employee.mobile.strip(),
    }
    return {key: value for key, value in attributes.items() if value}


def build_summary(
    employee: EmployeeInput,
    identity: DerivedIdentity,
    groups: List[str],
    licenses: List[str],
    simulate: bool,
) -> str:
    mode = "SIMULATION (no changes will be made)" if simulate else "LIVE"
    lines = [
        "Create the following account?",
        "",
        f"Name:        {employee.display_name}",
        f"Username:    {identity.account_handle}",
        f"Email:       {identity.primary_email}",
        f"UPN:         {identity.principal_name}",
        f"Company:     {employee.company}",
        f"Office:      {employee.office}",
        f"Department:  {employee.department}",
        f"Job title:   {employee.job_title.strip() or '-'}",
        f"Mobile:      {employee.mobile.strip() or '-'}",
        f"Cloud only:  {'Yes' if employee.cloud_only else 'No'}",
        f"Groups:      {', '.join(groups) or '-'}",
        f"Licenses:    {', '.join(licenses) or '-'}",
        f"Mode:        {mode}",
    ]
    return "\n".join(lines)


class ProvisioningOrchestrator:
    """Runs one onboarding submit from validation to a terminal state.

    Create one instance per submit. Submits share a single-flight lock so two
    runs never overlap; once execution starts it runs to success or failure.
    Completed phases are not rolled back when a later phase fails.
    """

    def __init__(
        self,
        catalog: OnboardingCatalog,
        directory: Optional[Directory] = None,
        session: Optional[IdentitySession] = None,
        simulate: Optional[bool] = None,
        confirm: Optional[ConfirmCallback] = None,
        progress: Optional[ProgressCallback] = None,
        lock: Optional[Any] = None,
    ) -> None:
        self.catalog = catalog
        self.directory = directory
        self.session = session
        self.simulate = catalog.demo_mode_default if simulate is None else simulate
        self._confirm = confirm
        self._progress = progress
        self._lock = lock if lock is not None else _SUBMIT_LOCK
        self._states: List[OrchestratorState] = [OrchestratorState.IDLE]

    @property
    def state(self) -> OrchestratorState:
        return self._states[-1]

    # ------------------------------------------------------------------ #
    # Submit boundary                                                    #
    # ------------------------------------------------------------------ #
    def submit(self, employee: EmployeeInput) -> ProvisioningResult:
        if not self._lock.acquire(blocking=False):
            error = PreconditionError("Another onboarding submission is already in progress.")
            logger.warning("Submit rejected: %s", error)
            return ProvisioningResult(
                status=ProvisioningStatus.FAILED,
                message=str(error),
                error=error,
                states=list(self._states),
            )
        try:
            return self._run(employee)
        finally:
            self._lock.release()

    def _run(self, employee: EmployeeInput) -> ProvisioningResult:
        self._states = [OrchestratorState.IDLE]
        self._transition(OrchestratorState.VALIDATING)

        identity = derive_identity(employee, self.catalog)
        access = resolve_access(employee, self.catalog)
        result = ProvisioningResult(
            status=ProvisioningStatus.FAILED,
            identity=identity,
            resolved_groups=list(access.groups),
            resolved_licenses=list(access.licenses),
        )

        missing = missing_fields(employee, identity, self.catalog)
        if missing:
            error = ValidationError(missing)
            result.missing_fields = list(missing)
            logger.warning("Validation failed: %s", error)
            return self._finish(result, OrchestratorState.VALIDATION_FAILED, error)

        try:
            self._check_preconditions()
        except PreconditionError as exc:
            logger.warning("Cannot provision %s: %s", identity.account_handle, exc)
            return self._finish(result, OrchestratorState.FAILED, exc)

        self._transition(OrchestratorState.AWAITING_CONFIRMATION)
        summary = build_summary(
            employee, identity, result.resolved_groups, result.resolved_licenses, self.simulate
        )
        if not (self._confirm and self._confirm(summary)):
            logger.info("Operator cancelled onboarding of %s.", identity.account_handle)
            result.resolved_groups = []
            result.resolved_licenses = []
            result.message = "Onboarding cancelled; no changes were made."
            return self._finish(result, OrchestratorState.CANCELLED)

        self._transition(OrchestratorState.EXECUTING)
        if self.simulate:
            return self._simulate(result)

        try:
            self._execute(employee, result)
        except ConflictError as exc:
            logger.warning("Onboarding stopped: %s", exc)
            return self._finish(result, OrchestratorState.FAILED, exc)
        except ProvisioningError as exc:
            logger.error("Onboarding of %s failed: %s", identity.account_handle, exc)
            return self._finish(result, OrchestratorState.FAILED, exc)
        except Exception as exc:
            logger.exception("Unexpected error onboarding %s", identity.account_handle)
            error = ExternalServiceError(f"Unexpected directory error: {exc}")
            return self._finish(result, OrchestratorState.FAILED, error)

        result.message = (
            f"Account {identity.principal_name} created. "
            "Share the temporary password with the employee; it will not be shown again."
        )
        return self._finish(result, OrchestratorState.SUCCEEDED)

    # ------------------------------------------------------------------ #
    # Phases                                                             #
    # ------------------------------------------------------------------ #
    def _check_preconditions(self) -> None:
        if self.simulate:
            return
        if self.session is None or not self.session.is_authenticated:
            raise PreconditionError("Sign in to Microsoft 365 before creating accounts.")
        if self.directory is None:
            raise PreconditionError(
                "No directory is configured for this employee; add LDAP settings "
                "or mark the employee as cloud only."
            )

    def _simulate(self, result: ProvisioningResult) -> ProvisioningResult:
        for phase in Phase:
            logger.info("Simulating %s for %s.", phase.value, result.identity.account_handle)
            self._complete(result, phase, PhaseOutcome.SIMULATED, "No external call made.")
        result.message = (
            f"Simulation complete for {result.identity.principal_name}; no account was created."
        )
        return self._finish(result, OrchestratorState.SIMULATED)

    def _execute(self, employee: EmployeeInput, result: ProvisioningResult) -> None:
        assert self.directory is not None
        directory = self.directory
        identity = result.identity

        with self._phase(result, Phase.EXISTENCE_CHECK):
            if directory.exists(identity.account_handle):
                raise ConflictError(identity.account_handle)
        self._complete(result, Phase.EXISTENCE_CHECK, PhaseOutcome.COMPLETED)

        credential = generate_temporary_password()
        with self._phase(result, Phase.ACCOUNT_CREATION):
            account_id = directory.create_account(
                identity, build_account_attributes(employee, self.catalog), credential
            )
        result.account_id = account_id
        self._complete(result, Phase.ACCOUNT_CREATION, PhaseOutcome.COMPLETED, account_id)

        with self._phase(result, Phase.GROUP_ATTACHMENT):
            for group in result.resolved_groups:
                directory.attach_group(account_id, group)
        self._complete(
            result,
            Phase.GROUP_ATTACHMENT,
            PhaseOutcome.COMPLETED,
            f"{len(result.resolved_groups)} group(s) attached.",
        )

        # TODO: map license identifiers to tenant SKUs and assign them here.
        self._complete(
            result,
            Phase.LICENSE_ASSIGNMENT,
            PhaseOutcome.NOT_IMPLEMENTED,
            "License assignment is not implemented; assign licenses manually.",
        )
        result.temporary_credential = credential

    @contextlib.contextmanager
    def _phase(self, result: ProvisioningResult, phase: Phase) -> Iterator[None]:
        try:
            yield
        except Exception as exc:
            result.phases.append(
                PhaseResult(phase=phase, outcome=PhaseOutcome.FAILED, detail=str(exc))
            )
            raise

    def _complete(
        self,
        result: ProvisioningResult,
        phase: Phase,
        outcome: PhaseOutcome,
        detail: str = "",
    ) -> None:
        result.phases.append(PhaseResult(phase=phase, outcome=outcome, detail=detail))
        result.progress = phase.milestone
        if self._progress:
            self._progress(phase.milestone, phase)

    # ------------------------------------------------------------------ #
    # State bookkeeping                                                  #
    # ------------------------------------------------------------------ #
    def _transition(self, state: OrchestratorState) -> None:
        logger.info("Onboarding state %s -> %s", self.state.value, state.value)
        self._states.append(state)

    def _finish(
        self,
        result: ProvisioningResult,
        state: OrchestratorState,
        error: Optional[Exception] = None,
    ) -> ProvisioningResult:
        self._transition(state)
        result.status = _TERMINAL_STATUS[state]
        result.states = list(self._states)
        if error is not None:
            result.error = error
            result.message = str(error)
        return result


__all__ = [
    "ProvisioningOrchestrator",
    "build_account_attributes",
    "build_summary",
    "generate_temporary_password",
    "missing_fields",
]
