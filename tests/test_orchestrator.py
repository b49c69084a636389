"""
Tests for the provisioning orchestrator state machine.
"""

import string
import threading
from dataclasses import replace

import pytest

from conftest import FakeDirectory, FakeSession
from onboard_provisioner.errors import (
    ConflictError,
    ExternalServiceError,
    PreconditionError,
    ValidationError,
)
from onboard_provisioner.models import (
    EmployeeInput,
    OrchestratorState,
    Phase,
    PhaseOutcome,
    ProvisioningStatus,
)
from onboard_provisioner.orchestrator import (
    ProvisioningOrchestrator,
    build_account_attributes,
    build_summary,
    generate_temporary_password,
    missing_fields,
)
from onboard_provisioner.identity import derive_identity


def _always_confirm(summary):
    return True


def _orchestrator(catalog, submit_lock, **kwargs):
    kwargs.setdefault("confirm", _always_confirm)
    return ProvisioningOrchestrator(catalog, lock=submit_lock, **kwargs)


class TestValidation:
    def test_missing_department_is_reported(self, catalog, jane, fake_directory, submit_lock):
        orchestrator = _orchestrator(
            catalog, submit_lock, directory=fake_directory, session=FakeSession(), simulate=False
        )

        result = orchestrator.submit(replace(jane, department=""))

        assert result.status == ProvisioningStatus.VALIDATION_FAILED
        assert "Department" in result.missing_fields
        assert isinstance(result.error, ValidationError)
        assert fake_directory.calls == []
        assert result.states[-1] == OrchestratorState.VALIDATION_FAILED

    def test_every_missing_field_is_reported_at_once(self, catalog, submit_lock):
        orchestrator = _orchestrator(catalog, submit_lock, simulate=True)

        result = orchestrator.submit(EmployeeInput())

        assert result.missing_fields == [
            "First Name",
            "Last Name",
            "Email",
            "Office",
            "Company",
            "Department",
        ]
        assert "First Name, Last Name, Email, Office, Company, Department" in result.message

    def test_unconfigured_choice_counts_as_missing(self, catalog, jane):
        employee = replace(jane, office="Moon Base")
        identity = derive_identity(employee, catalog)

        assert missing_fields(employee, identity, catalog) == ["Office"]

    def test_confirmation_not_requested_when_invalid(self, catalog, submit_lock):
        prompts = []
        orchestrator = _orchestrator(catalog, submit_lock, simulate=True, confirm=prompts.append)

        orchestrator.submit(EmployeeInput(first_name="Jane"))

        assert prompts == []


class TestConfirmation:
    def test_declined_confirmation_cancels(self, catalog, jane, fake_directory, submit_lock):
        summaries = []

        def decline(summary):
            summaries.append(summary)
            return False

        orchestrator = _orchestrator(
            catalog,
            submit_lock,
            directory=fake_directory,
            session=FakeSession(),
            simulate=False,
            confirm=decline,
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.CANCELLED
        assert result.resolved_groups == []
        assert result.resolved_licenses == []
        assert fake_directory.calls == []
        assert "jane.doe@acme.test" in summaries[0]
        assert result.states == [
            OrchestratorState.IDLE,
            OrchestratorState.VALIDATING,
            OrchestratorState.AWAITING_CONFIRMATION,
            OrchestratorState.CANCELLED,
        ]

    def test_no_confirm_callback_cancels(self, catalog, jane, submit_lock):
        orchestrator = ProvisioningOrchestrator(catalog, simulate=True, lock=submit_lock)

        assert orchestrator.submit(jane).status == ProvisioningStatus.CANCELLED

    def test_summary_lists_groups_licenses_and_mode(self, catalog, jane):
        identity = derive_identity(jane, catalog)

        summary = build_summary(jane, identity, ["All Staff", "Developers"], ["M365_E3"], True)

        assert "Groups:      All Staff, Developers" in summary
        assert "Licenses:    M365_E3" in summary
        assert "SIMULATION" in summary
        assert "Department:  Engineering" in summary


class TestSimulation:
    def test_end_to_end_simulation(self, catalog, jane, fake_directory, submit_lock):
        progress = []
        orchestrator = _orchestrator(
            catalog,
            submit_lock,
            directory=fake_directory,
            simulate=True,
            progress=lambda percent, phase: progress.append((percent, phase)),
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.SIMULATED
        assert result.identity.primary_email == "jane.doe@acme.test"
        assert result.progress == 100
        assert progress == [
            (30, Phase.EXISTENCE_CHECK),
            (60, Phase.ACCOUNT_CREATION),
            (85, Phase.GROUP_ATTACHMENT),
            (100, Phase.LICENSE_ASSIGNMENT),
        ]
        assert all(phase.outcome == PhaseOutcome.SIMULATED for phase in result.phases)
        assert fake_directory.calls == []
        assert result.temporary_credential is None
        assert result.states[-2:] == [OrchestratorState.EXECUTING, OrchestratorState.SIMULATED]

    def test_simulation_needs_no_session(self, catalog, jane, submit_lock):
        orchestrator = _orchestrator(catalog, submit_lock, simulate=True)

        assert orchestrator.submit(jane).status == ProvisioningStatus.SIMULATED

    def test_simulate_defaults_to_catalog_demo_mode(self, catalog, submit_lock):
        assert _orchestrator(catalog, submit_lock).simulate is True


class TestLiveExecution:
    def test_success(self, catalog, jane, fake_directory, submit_lock):
        orchestrator = _orchestrator(
            catalog, submit_lock, directory=fake_directory, session=FakeSession(), simulate=False
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.SUCCEEDED
        assert result.account_id == "id-jane.doe"
        assert [group for _, group in fake_directory.attached] == result.resolved_groups
        created = fake_directory.created[0]
        assert created["temporary_password"] == result.temporary_credential
        assert created["attributes"]["department"] == "Engineering"
        assert created["attributes"]["streetAddress"] == "1 Main Street"
        assert result.phases[-1].phase == Phase.LICENSE_ASSIGNMENT
        assert result.phases[-1].outcome == PhaseOutcome.NOT_IMPLEMENTED
        assert result.progress == 100

    def test_existing_account_is_a_conflict(self, catalog, jane, submit_lock):
        directory = FakeDirectory(existing=["jane.doe"])
        orchestrator = _orchestrator(
            catalog, submit_lock, directory=directory, session=FakeSession(), simulate=False
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.FAILED
        assert isinstance(result.error, ConflictError)
        assert directory.calls == [("exists", "jane.doe")]
        assert result.phases[0].outcome == PhaseOutcome.FAILED
        assert result.temporary_credential is None

    def test_group_failure_stops_immediately(self, catalog, jane, submit_lock):
        directory = FakeDirectory(fail_on_group="Acme Staff")
        orchestrator = _orchestrator(
            catalog, submit_lock, directory=directory, session=FakeSession(), simulate=False
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.FAILED
        assert isinstance(result.error, ExternalServiceError)
        assert [group for _, group in directory.attached] == ["All Staff", "VPN Users"]
        assert ("attach_group", "HQ Badge Access") not in directory.calls
        # The created account is left in place.
        assert len(directory.created) == 1
        assert result.temporary_credential is None

    def test_create_failure(self, catalog, jane, submit_lock):
        directory = FakeDirectory(fail_on_create=True)
        orchestrator = _orchestrator(
            catalog, submit_lock, directory=directory, session=FakeSession(), simulate=False
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.FAILED
        assert result.phases[-1].phase == Phase.ACCOUNT_CREATION
        assert not any(call[0] == "attach_group" for call in directory.calls)

    def test_unexpected_exception_is_wrapped(self, catalog, jane, submit_lock):
        class BrokenDirectory(FakeDirectory):
            def exists(self, handle):
                raise RuntimeError("socket closed")

        orchestrator = _orchestrator(
            catalog, submit_lock, directory=BrokenDirectory(), session=FakeSession(), simulate=False
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.FAILED
        assert isinstance(result.error, ExternalServiceError)
        assert "socket closed" in result.message


class TestPreconditions:
    @pytest.mark.parametrize("session", [None, FakeSession(authenticated=False)])
    def test_unauthenticated_session_blocks_execution(
        self, catalog, jane, fake_directory, submit_lock, session
    ):
        prompts = []
        orchestrator = _orchestrator(
            catalog,
            submit_lock,
            directory=fake_directory,
            session=session,
            simulate=False,
            confirm=prompts.append,
        )

        result = orchestrator.submit(jane)

        assert result.status == ProvisioningStatus.FAILED
        assert isinstance(result.error, PreconditionError)
        assert OrchestratorState.EXECUTING not in result.states
        assert prompts == []
        assert fake_directory.calls == []

    def test_missing_directory_blocks_execution(self, catalog, jane, submit_lock):
        orchestrator = _orchestrator(catalog, submit_lock, session=FakeSession(), simulate=False)

        result = orchestrator.submit(jane)

        assert isinstance(result.error, PreconditionError)

    def test_concurrent_submit_is_rejected(self, catalog, jane, submit_lock):
        submit_lock.acquire()
        try:
            result = _orchestrator(catalog, submit_lock, simulate=True).submit(jane)
        finally:
            submit_lock.release()

        assert result.status == ProvisioningStatus.FAILED
        assert isinstance(result.error, PreconditionError)

    def test_lock_is_released_after_submit(self, catalog, jane, submit_lock):
        _orchestrator(catalog, submit_lock, simulate=True).submit(jane)

        assert submit_lock.acquire(blocking=False)
        submit_lock.release()

    def test_second_submit_is_rejected_while_first_runs(self, catalog, jane, submit_lock):
        entered = threading.Event()
        release = threading.Event()
        results = {}

        def slow_confirm(summary):
            entered.set()
            release.wait(timeout=5)
            return True

        first = _orchestrator(catalog, submit_lock, simulate=True, confirm=slow_confirm)
        worker = threading.Thread(target=lambda: results.setdefault("first", first.submit(jane)))
        worker.start()
        assert entered.wait(timeout=5)

        results["second"] = _orchestrator(catalog, submit_lock, simulate=True).submit(jane)
        release.set()
        worker.join(timeout=5)

        assert results["first"].status == ProvisioningStatus.SIMULATED
        assert isinstance(results["second"].error, PreconditionError)


class TestHelpers:
    def test_temporary_password_complexity(self):
        password = generate_temporary_password()

        assert len(password) == 16
        assert any(char in string.ascii_uppercase for char in password)
        assert any(char in string.ascii_lowercase for char in password)
        assert any(char in string.digits for char in password)
        assert any(not char.isalnum() for char in password)

    def test_temporary_passwords_are_unique(self):
        assert generate_temporary_password() != generate_temporary_password()

    def test_temporary_password_minimum_length(self):
        with pytest.raises(ValueError):
            generate_temporary_password(4)

    def test_account_attributes_drop_blank_values(self, catalog, jane):
        attributes = build_account_attributes(replace(jane, first_name="  jane ", office="Remote"), catalog)

        assert attributes["givenName"] == "jane"
        assert attributes["displayName"] == "Jane Doe"
        assert "title" not in attributes
        assert "streetAddress" not in attributes
