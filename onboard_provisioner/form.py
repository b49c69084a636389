"""Change events for the onboarding form and the values recomputed after each one."""
from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Tuple

from .access import resolve_access
from .catalog import OnboardingCatalog
from .config import to_bool
from .identity import company_domain_or_placeholder, derive_identity
from .models import DerivedIdentity, EmployeeInput


_BOOLEAN_FIELDS = {"cloud_only", "allow_upn_override"}
_FIELD_NAMES = frozenset(item.name for item in fields(EmployeeInput))


@dataclass(frozen=True)
class FormPreview:
    """Everything the form displays that is derived rather than typed."""

    employee: EmployeeInput
    identity: DerivedIdentity
    groups: Tuple[str, ...]
    licenses: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee": self.employee.to_dict(),
            "identity": self.identity.to_dict(),
            "principal_candidates": self.identity.principal_candidates,
            "groups": list(self.groups),
            "licenses": list(self.licenses),
        }


def reset_input() -> EmployeeInput:
    return EmployeeInput()


def _coerce(name: str, value: Any) -> Any:
    if name in _BOOLEAN_FIELDS:
        return to_bool(value)
    return "" if value is None else str(value)


def apply_change(
    employee: EmployeeInput, name: str, value: Any, catalog: OnboardingCatalog
) -> EmployeeInput:
    """Return a copy of ``employee`` with one field changed.

    The UPN domain follows the company domain while the override is off. Turning
    the override on keeps the current domain (company changes no longer touch it)
    and turning it off again snaps it back to the company domain.
    """

    if name not in _FIELD_NAMES:
        raise ValueError(f"Unknown onboarding field '{name}'.")

    updated = replace(employee, **{name: _coerce(name, value)})
    if not updated.allow_upn_override:
        updated = replace(
            updated, upn_domain=company_domain_or_placeholder(updated.company, catalog)
        )
    return updated


def apply_changes(
    employee: EmployeeInput, changes: Dict[str, Any], catalog: OnboardingCatalog
) -> EmployeeInput:
    # Override toggles go first so a UPN domain sent alongside them is kept.
    ordered = sorted(changes.items(), key=lambda item: item[0] != "allow_upn_override")
    for name, value in ordered:
        employee = apply_change(employee, name, value, catalog)
    return employee


def preview(employee: EmployeeInput, catalog: OnboardingCatalog) -> FormPreview:
    access = resolve_access(employee, catalog)
    return FormPreview(
        employee=employee,
        identity=derive_identity(employee, catalog),
        groups=access.groups,
        licenses=access.licenses,
    )


__all__ = ["FormPreview", "apply_change", "apply_changes", "preview", "reset_input"]
