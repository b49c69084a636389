"""
Pytest configuration and fixtures for the onboarding provisioner tests.
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest
import yaml

from onboard_provisioner.catalog import load_catalog
from onboard_provisioner.errors import ExternalServiceError
from onboard_provisioner.models import EmployeeInput


class FakeDirectory:
    """In-memory directory that records every call made to it."""

    def __init__(
        self,
        existing: Optional[List[str]] = None,
        fail_on_group: Optional[str] = None,
        fail_on_create: bool = False,
    ):
        self.existing = set(existing or [])
        self.fail_on_group = fail_on_group
        self.fail_on_create = fail_on_create
        self.calls: List[tuple] = []
        self.created: List[Dict[str, Any]] = []
        self.attached: List[tuple] = []

    def exists(self, handle: str) -> bool:
        self.calls.append(("exists", handle))
        return handle in self.existing

    def create_account(self, identity, attributes: Mapping[str, Any], temporary_password: str) -> str:
        self.calls.append(("create_account", identity.account_handle))
        if self.fail_on_create:
            raise ExternalServiceError("directory refused the new account")
        self.created.append(
            {
                "identity": identity,
                "attributes": dict(attributes),
                "temporary_password": temporary_password,
            }
        )
        return f"id-{identity.account_handle}"

    def attach_group(self, account_id: str, group_id: str) -> None:
        self.calls.append(("attach_group", group_id))
        if group_id == self.fail_on_group:
            raise ExternalServiceError(f"cannot attach {group_id}")
        self.attached.append((account_id, group_id))


class FakeSession:
    def __init__(self, authenticated: bool = True):
        self.is_authenticated = authenticated


@pytest.fixture
def catalog_document() -> Dict[str, Any]:
    """Catalog document in the on-disk layout."""
    return {
        "App": {"DemoModeDefault": True},
        "Offices": {
            "HQ": {"streetAddress": "1 Main Street", "l": "Springfield", "c": "US"},
            "Remote": {},
        },
        "Companies": {"Acme": "acme.test", "Globex": "globex.test"},
        "Departments": ["Engineering", "Finance", "Sales"],
        "Groups": {
            "Global": ["All Staff", "Legacy Distribution", "VPN Users"],
            "Company": {"Acme": ["Acme Staff"], "Globex": ["Globex Staff"]},
            "Office": {"HQ": ["HQ Badge Access", "All Staff"]},
            "Department": {"Engineering": ["Developers", "VPN Users"]},
            "Ignore": ["Legacy Distribution"],
        },
        "Licenses": {
            "Defaults": ["M365_BUSINESS_STANDARD"],
            "CloudOnlyDefaults": ["EXCHANGE_ONLINE_KIOSK"],
            "CompanyDefaults": {"Globex": ["M365_E3"]},
        },
    }


@pytest.fixture
def catalog(catalog_document):
    return load_catalog(catalog_document)


@pytest.fixture
def catalog_file(tmp_path: Path, catalog_document) -> Path:
    path = tmp_path / "onboarding.json"
    path.write_text(json.dumps(catalog_document), encoding="utf-8")
    return path


@pytest.fixture
def settings_file(tmp_path: Path, catalog_file: Path) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "ldap": {
                    "server_uri": "mock://directory",
                    "user_dn": "CN=svc,DC=corp,DC=test",
                    "password": "secret",
                    "base_dn": "DC=corp,DC=test",
                    "user_ou": "OU=Users,DC=corp,DC=test",
                    "mock_data_file": str(tmp_path / "mock_directory.yaml"),
                },
                "storage": {"catalog_file": str(catalog_file)},
                "logging": {"level": "DEBUG"},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def jane() -> EmployeeInput:
    return EmployeeInput(
        first_name="Jane",
        last_name="Doe",
        company="Acme",
        office="HQ",
        department="Engineering",
        upn_domain="acme.test",
    )


@pytest.fixture
def fake_directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def submit_lock():
    """A private lock so tests never contend on the module-wide one."""
    return threading.Lock()
