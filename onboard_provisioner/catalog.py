"""Onboarding catalog: companies, offices, departments, group and license rules."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

import yaml

from .access import resolve_licenses
from .config import to_bool
from .errors import ConfigurationError


GROUP_KINDS = ("global", "company", "office", "department")


def _empty_mapping() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class GroupRules:
    global_groups: Tuple[str, ...] = ()
    by_company: Mapping[str, Tuple[str, ...]] = field(default_factory=_empty_mapping)
    by_office: Mapping[str, Tuple[str, ...]] = field(default_factory=_empty_mapping)
    by_department: Mapping[str, Tuple[str, ...]] = field(default_factory=_empty_mapping)
    ignore: frozenset = frozenset()


@dataclass(frozen=True)
class LicenseRules:
    defaults: Tuple[str, ...] = ()
    cloud_only_defaults: Tuple[str, ...] = ()
    by_company: Mapping[str, Tuple[str, ...]] = field(default_factory=_empty_mapping)


@dataclass(frozen=True)
class OnboardingCatalog:
    """Immutable view of the onboarding configuration document."""

    companies: Mapping[str, str]
    offices: Tuple[str, ...]
    departments: Tuple[str, ...]
    office_details: Mapping[str, Any] = field(default_factory=_empty_mapping)
    group_rules: GroupRules = field(default_factory=GroupRules)
    license_rules: LicenseRules = field(default_factory=LicenseRules)
    demo_mode_default: bool = True

    @property
    def company_names(self) -> Tuple[str, ...]:
        return tuple(self.companies.keys())

    @property
    def upn_domains(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(self.companies.values()))

    def company_domain(self, name: str) -> Optional[str]:
        return self.companies.get(name)

    def groups_for(self, selector: Optional[str], kind: str) -> Tuple[str, ...]:
        if kind not in GROUP_KINDS:
            raise ValueError(f"Unknown group rule kind '{kind}'.")
        rules = self.group_rules
        if kind == "global":
            return rules.global_groups
        if not selector:
            return ()
        lookup = {
            "company": rules.by_company,
            "office": rules.by_office,
            "department": rules.by_department,
        }[kind]
        return lookup.get(selector, ())

    def licenses_for(self, company: Optional[str], cloud_only: bool) -> Tuple[str, ...]:
        return tuple(resolve_licenses(company, cloud_only, self))

    def office_attributes(self, office: str) -> Dict[str, str]:
        """Return directory attributes stored against an office (address, city, ...)."""

        details = self.office_details.get(office)
        if not isinstance(details, Mapping):
            return {}
        return {
            str(key): str(value)
            for key, value in details.items()
            if value is not None and not isinstance(value, (Mapping, list, tuple))
        }


def _read_document(path: Path) -> Any:
    if not path.exists():
        raise ConfigurationError(f"Onboarding catalog '{path}' does not exist.")
    try:
        with path.open("r", encoding="utf-8") as handle:
            if path.suffix.lower() == ".json":
                return json.load(handle)
            return yaml.safe_load(handle)
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Onboarding catalog '{path}' could not be parsed: {exc}") from exc


def _section(document: Mapping[str, Any], key: str, expected: type, default: Any) -> Any:
    value = document.get(key)
    if value is None:
        return default
    if not isinstance(value, expected):
        raise ConfigurationError(
            f"Catalog section '{key}' must be a {expected.__name__}, got {type(value).__name__}."
        )
    return value


def _string_list(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ConfigurationError(f"Catalog entry '{where}' must be a list of strings.")
    return tuple(str(item).strip() for item in value if str(item or "").strip())


def _rule_map(value: Any, where: str) -> Mapping[str, Tuple[str, ...]]:
    if value is None:
        return _empty_mapping()
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Catalog entry '{where}' must be a mapping.")
    return MappingProxyType(
        {str(key): _string_list(entries, f"{where}.{key}") for key, entries in value.items()}
    )


def parse_catalog(document: Mapping[str, Any]) -> OnboardingCatalog:
    """Validate a parsed catalog document and build an :class:`OnboardingCatalog`."""

    if not isinstance(document, Mapping):
        raise ConfigurationError("Onboarding catalog must be a mapping at the top level.")

    app_section = _section(document, "App", Mapping, {})
    offices_section = _section(document, "Offices", Mapping, {})
    companies_section = _section(document, "Companies", Mapping, {})
    departments = _string_list(document.get("Departments"), "Departments")
    groups_section = _section(document, "Groups", Mapping, {})
    licenses_section = _section(document, "Licenses", Mapping, {})

    companies: Dict[str, str] = {}
    for name, domain in companies_section.items():
        cleaned_name = str(name).strip()
        cleaned_domain = str(domain or "").strip()
        if not cleaned_name or not cleaned_domain:
            raise ConfigurationError(f"Company '{name}' must have a non-empty email domain.")
        companies[cleaned_name] = cleaned_domain

    if not companies:
        raise ConfigurationError("Onboarding catalog defines no companies.")
    if not offices_section:
        raise ConfigurationError("Onboarding catalog defines no offices.")
    if not departments:
        raise ConfigurationError("Onboarding catalog defines no departments.")

    group_rules = GroupRules(
        global_groups=_string_list(groups_section.get("Global"), "Groups.Global"),
        by_company=_rule_map(groups_section.get("Company"), "Groups.Company"),
        by_office=_rule_map(groups_section.get("Office"), "Groups.Office"),
        by_department=_rule_map(groups_section.get("Department"), "Groups.Department"),
        ignore=frozenset(_string_list(groups_section.get("Ignore"), "Groups.Ignore")),
    )
    license_rules = LicenseRules(
        defaults=_string_list(licenses_section.get("Defaults"), "Licenses.Defaults"),
        cloud_only_defaults=_string_list(
            licenses_section.get("CloudOnlyDefaults"), "Licenses.CloudOnlyDefaults"
        ),
        by_company=_rule_map(licenses_section.get("CompanyDefaults"), "Licenses.CompanyDefaults"),
    )

    return OnboardingCatalog(
        companies=MappingProxyType(companies),
        offices=tuple(str(name) for name in offices_section.keys()),
        departments=departments,
        office_details=MappingProxyType({str(k): v for k, v in offices_section.items()}),
        group_rules=group_rules,
        license_rules=license_rules,
        demo_mode_default=to_bool(app_section.get("DemoModeDefault", True)),
    )


def load_catalog(source: Union[Path, str, Mapping[str, Any]]) -> OnboardingCatalog:
    """Load the onboarding catalog from a JSON/YAML file or an already parsed mapping."""

    if isinstance(source, Mapping):
        return parse_catalog(source)
    document = _read_document(Path(source))
    if document is None:
        raise ConfigurationError(f"Onboarding catalog '{source}' is empty.")
    return parse_catalog(document)


__all__ = [
    "GROUP_KINDS",
    "GroupRules",
    "LicenseRules",
    "OnboardingCatalog",
    "load_catalog",
    "parse_catalog",
]
