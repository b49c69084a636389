"""Default group and license resolution for a new employee."""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from .models import AccessDefaults, EmployeeInput, unique_preserve

if TYPE_CHECKING:  # pragma: no cover
    from .catalog import OnboardingCatalog


def resolve_groups(
    company: Optional[str],
    office: Optional[str],
    department: Optional[str],
    catalog: "OnboardingCatalog",
) -> List[str]:
    """Collect global, company, office and department groups minus the ignore list.

    Rules are additive and keep first-occurrence order. An ignored group is
    dropped even when a global rule names it.
    """

    candidates = [
        *catalog.groups_for(None, "global"),
        *catalog.groups_for(company, "company"),
        *catalog.groups_for(office, "office"),
        *catalog.groups_for(department, "department"),
    ]
    ignored = catalog.group_rules.ignore
    return unique_preserve(group for group in candidates if group not in ignored)


def resolve_licenses(
    company: Optional[str], cloud_only: bool, catalog: "OnboardingCatalog"
) -> List[str]:
    """Pick exactly one license set: cloud-only, then per-company, then defaults."""

    rules = catalog.license_rules
    if cloud_only:
        return list(rules.cloud_only_defaults)
    if company and company in rules.by_company:
        return list(rules.by_company[company])
    return list(rules.defaults)


def resolve_access(employee: EmployeeInput, catalog: "OnboardingCatalog") -> AccessDefaults:
    groups = resolve_groups(employee.company, employee.office, employee.department, catalog)
    licenses = resolve_licenses(employee.company, employee.cloud_only, catalog)
    return AccessDefaults(groups=tuple(groups), licenses=tuple(licenses))


__all__ = ["resolve_access", "resolve_groups", "resolve_licenses"]
