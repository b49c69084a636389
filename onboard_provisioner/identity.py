"""Account handle, email and principal name derivation."""
from __future__ import annotations

import re
from typing import Optional

from .catalog import OnboardingCatalog
from .models import DerivedIdentity, EmployeeInput


PLACEHOLDER_DOMAIN = "example.com"

_WHITESPACE = re.compile(r"\s+")


def derive_handle(first_name: str, last_name: str) -> str:
    """Return the canonical ``first.last`` handle with whitespace removed."""

    first = (first_name or "").strip()
    last = (last_name or "").strip()
    if not first or not last:
        raise ValueError("Both first and last name are required to derive a handle.")
    return _WHITESPACE.sub("", f"{first}.{last}").lower()


def company_domain_or_placeholder(company: Optional[str], catalog: OnboardingCatalog) -> str:
    # An unknown company never blocks the form; it gets the placeholder domain.
    return catalog.company_domain(company or "") or PLACEHOLDER_DOMAIN


def derive_email(handle: str, company: Optional[str], catalog: OnboardingCatalog) -> str:
    return f"{handle}@{company_domain_or_placeholder(company, catalog)}"


def derive_principal_domain(employee: EmployeeInput, catalog: OnboardingCatalog) -> str:
    """Domain suffix for the user principal name.

    With the override enabled the operator's UPN-domain choice is used as is;
    otherwise the principal follows the company's email domain.
    """

    if employee.allow_upn_override and employee.upn_domain.strip():
        return employee.upn_domain.strip()
    return company_domain_or_placeholder(employee.company, catalog)


def derive_identity(employee: EmployeeInput, catalog: OnboardingCatalog) -> DerivedIdentity:
    if not employee.has_names:
        return DerivedIdentity()
    handle = derive_handle(employee.first_name, employee.last_name)
    return DerivedIdentity(
        account_handle=handle,
        primary_email=derive_email(handle, employee.company, catalog),
        principal_name=f"{handle}@{derive_principal_domain(employee, catalog)}",
    )


__all__ = [
    "PLACEHOLDER_DOMAIN",
    "company_domain_or_placeholder",
    "derive_email",
    "derive_handle",
    "derive_identity",
    "derive_principal_domain",
]
