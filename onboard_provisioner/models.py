"""Data models for onboarding input, derived identities and provisioning results."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


def unique_preserve(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def normalize_person_name(raw: str) -> str:
    stripped = (raw or "").strip()
    if not stripped:
        return ""

    def _capitalize_segment(segment: str) -> str:
        return "-".join(part.capitalize() for part in segment.split("-"))

    return " ".join(_capitalize_segment(part) for part in stripped.split())


@dataclass(frozen=True)
class EmployeeInput:
    """Form values for one in-progress onboarding."""

    first_name: str = ""
    last_name: str = ""
    company: str = ""
    office: str = ""
    department: str = ""
    job_title: str = ""
    mobile: str = ""
    cloud_only: bool = False
    allow_upn_override: bool = False
    upn_domain: str = ""

    @property
    def display_name(self) -> str:
        first = normalize_person_name(self.first_name)
        last = normalize_person_name(self.last_name)
        return f"{first} {last}".strip()

    @property
    def has_names(self) -> bool:
        return bool(self.first_name.strip() and self.last_name.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "company": self.company,
            "office": self.office,
            "department": self.department,
            "job_title": self.job_title,
            "mobile": self.mobile,
            "cloud_only": self.cloud_only,
            "allow_upn_override": self.allow_upn_override,
            "upn_domain": self.upn_domain,
        }


@dataclass(frozen=True)
class DerivedIdentity:
    """Account handle and addresses computed from the employee's names."""

    account_handle: str = ""
    primary_email: str = ""
    principal_name: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.account_handle

    @property
    def principal_candidates(self) -> List[str]:
        """Principal name first, then the primary email when it differs."""

        candidates: List[str] = []
        seen_lower: set[str] = set()
        for candidate in (self.principal_name, self.primary_email):
            lowered = candidate.strip().lower()
            if lowered and lowered not in seen_lower:
                seen_lower.add(lowered)
                candidates.append(candidate.strip())
        return candidates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_handle": self.account_handle,
            "primary_email": self.primary_email,
            "principal_name": self.principal_name,
        }


@dataclass(frozen=True)
class AccessDefaults:
    groups: Tuple[str, ...] = ()
    licenses: Tuple[str, ...] = ()


class ProvisioningStatus(str, Enum):
    CANCELLED = "cancelled"
    VALIDATION_FAILED = "validation_failed"
    SIMULATED = "simulated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    VALIDATION_FAILED = "validation_failed"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CANCELLED = "cancelled"
    EXECUTING = "executing"
    SIMULATED = "simulated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Phase(str, Enum):
    """Execution phases in the order they run, with their progress milestone."""

    EXISTENCE_CHECK = "existence_check"
    ACCOUNT_CREATION = "account_creation"
    GROUP_ATTACHMENT = "group_attachment"
    LICENSE_ASSIGNMENT = "license_assignment"

    @property
    def milestone(self) -> int:
        return _PHASE_MILESTONES[self]


_PHASE_MILESTONES = {
    Phase.EXISTENCE_CHECK: 30,
    Phase.ACCOUNT_CREATION: 60,
    Phase.GROUP_ATTACHMENT: 85,
    Phase.LICENSE_ASSIGNMENT: 100,
}


class PhaseOutcome(str, Enum):
    COMPLETED = "completed"
    SIMULATED = "simulated"
    NOT_IMPLEMENTED = "not_implemented"
    FAILED = "failed"


@dataclass(frozen=True)
class PhaseResult:
    phase: Phase
    outcome: PhaseOutcome
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"phase": self.phase.value, "outcome": self.outcome.value, "detail": self.detail}


@dataclass
class ProvisioningResult:
    """Outcome of a single submit."""

    status: ProvisioningStatus
    message: str = ""
    identity: DerivedIdentity = field(default_factory=DerivedIdentity)
    resolved_groups: List[str] = field(default_factory=list)
    resolved_licenses: List[str] = field(default_factory=list)
    temporary_credential: Optional[str] = None
    account_id: Optional[str] = None
    missing_fields: List[str] = field(default_factory=list)
    phases: List[PhaseResult] = field(default_factory=list)
    states: List[OrchestratorState] = field(default_factory=list)
    progress: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status in {
            ProvisioningStatus.SUCCEEDED,
            ProvisioningStatus.SIMULATED,
            ProvisioningStatus.CANCELLED,
        }

    def to_dict(self, include_credential: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
            "identity": self.identity.to_dict(),
            "resolved_groups": list(self.resolved_groups),
            "resolved_licenses": list(self.resolved_licenses),
            "account_id": self.account_id,
            "missing_fields": list(self.missing_fields),
            "phases": [phase.to_dict() for phase in self.phases],
            "states": [state.value for state in self.states],
            "progress": self.progress,
            "error": type(self.error).__name__ if self.error else None,
        }
        if include_credential:
            payload["temporary_credential"] = self.temporary_credential
        return payload


__all__ = [
    "AccessDefaults",
    "DerivedIdentity",
    "EmployeeInput",
    "OrchestratorState",
    "Phase",
    "PhaseOutcome",
    "PhaseResult",
    "ProvisioningResult",
    "ProvisioningStatus",
    "normalize_person_name",
    "unique_preserve",
]
