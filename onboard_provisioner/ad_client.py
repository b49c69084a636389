"""Active Directory helper client based on ldap3."""
from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from ldap3 import ALL, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException

from .config import LDAPConfig
from .errors import ExternalServiceError
from .models import DerivedIdentity


NORMAL_ACCOUNT = 512

logger = logging.getLogger(__name__)


class MockDirectory:
    """Lightweight directory emulator used when ldap3 connectivity isn't available."""

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {"users": [], "groups": []}
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        self._data.setdefault("users", [])
        self._data.setdefault("groups", [])

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    @property
    def users(self) -> List[Dict[str, Any]]:
        return self._data["users"]

    @property
    def has_groups(self) -> bool:
        return bool(self._data["groups"])

    def find_user(self, account_name: str) -> Optional[Dict[str, Any]]:
        lowered = account_name.lower()
        for user in self.users:
            name = str(user.get("attributes", {}).get("sAMAccountName") or "")
            if name.lower() == lowered:
                return user
        return None

    def find_group(self, name: str) -> Optional[str]:
        """Return the DN of the group whose name, CN or DN matches ``name``."""

        lowered = name.lower()
        for group in self._data["groups"]:
            dn = str(group.get("distinguished_name") or "")
            candidates = {str(group.get("name") or ""), dn}
            if dn.upper().startswith("CN="):
                candidates.add(dn[3:].split(",", 1)[0])
            if lowered in {candidate.lower() for candidate in candidates if candidate}:
                return dn
        return None

    def add_user(self, distinguished_name: str, attributes: Dict[str, Any]) -> None:
        attrs = dict(attributes)
        attrs.setdefault("memberOf", [])
        self.users.append({"distinguished_name": distinguished_name, "attributes": attrs})
        self._save()

    def add_user_to_group(self, distinguished_name: str, group_dn: str) -> None:
        target = next(
            (user for user in self.users if user.get("distinguished_name") == distinguished_name),
            None,
        )
        if not target:
            raise ExternalServiceError(f"No directory entry exists for {distinguished_name}.")
        known_groups = {str(group.get("distinguished_name")) for group in self._data["groups"]}
        if known_groups and group_dn not in known_groups:
            raise ExternalServiceError(f"Group {group_dn} does not exist.")
        member_of = target.setdefault("attributes", {}).setdefault("memberOf", [])
        if group_dn not in member_of:
            member_of.append(group_dn)
        self._save()


class ADClient:
    """Wrapper around ldap3 that exposes the directory operations onboarding needs."""

    def __init__(self, config: LDAPConfig):
        self.config = config
        self._mock_directory: Optional[MockDirectory] = None
        self.connection: Optional[Connection] = None

        if config.server_uri.startswith("mock://"):
            self._mock_directory = MockDirectory(config.mock_data_file)
        else:
            try:
                self.server = Server(config.server_uri, use_ssl=config.use_ssl, get_info=ALL)
                self.connection = Connection(
                    self.server,
                    user=config.user_dn,
                    password=config.password,
                    auto_bind=True,
                )
            except LDAPException as exc:
                raise ExternalServiceError(
                    f"Unable to bind to {config.server_uri}: {exc}"
                ) from exc

    @property
    def mock_directory(self) -> Optional[MockDirectory]:
        return self._mock_directory

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()

    # Directory contract --------------------------------------------------
    def exists(self, handle: str) -> bool:
        if self._mock_directory:
            return self._mock_directory.find_user(handle) is not None

        assert self.connection is not None
        escaped = self._escape_filter_value(handle)
        self.connection.search(
            search_base=self.config.base_dn,
            search_filter=f"(&(objectClass=user)(sAMAccountName={escaped}))",
            search_scope=SUBTREE,
            attributes=["distinguishedName"],
            size_limit=1,
        )
        return bool(self.connection.entries)

    def create_account(
        self,
        identity: DerivedIdentity,
        attributes: Mapping[str, Any],
        temporary_password: str,
    ) -> str:
        """Create an enabled user in the configured OU, forced to change password at logon."""

        display_name = str(attributes.get("displayName") or identity.account_handle)
        distinguished_name = f"CN={self._escape_dn_value(display_name)},{self.config.user_ou}"

        entry = {
            key: value for key, value in attributes.items() if value not in (None, "")
        }
        entry.update(
            {
                "sAMAccountName": identity.account_handle,
                "userPrincipalName": identity.principal_name,
                "mail": identity.primary_email,
            }
        )

        if self._mock_directory:
            record_attributes = copy.deepcopy(entry)
            record_attributes["userAccountControl"] = NORMAL_ACCOUNT
            record_attributes["pwdLastSet"] = 0
            self._mock_directory.add_user(distinguished_name, record_attributes)
            logger.info("Created mock directory entry %s.", distinguished_name)
            return distinguished_name

        assert self.connection is not None
        added = self.connection.add(
            dn=distinguished_name,
            object_class=["top", "person", "organizationalPerson", "user"],
            attributes=entry,
        )
        if not added:
            self._raise_result("Active Directory rejected the user creation request")

        if not self.connection.extend.microsoft.modify_password(
            distinguished_name, temporary_password
        ):
            self._raise_result("Active Directory rejected the temporary password")

        enabled = self.connection.modify(
            distinguished_name,
            {
                "userAccountControl": [(MODIFY_REPLACE, [NORMAL_ACCOUNT])],
                "pwdLastSet": [(MODIFY_REPLACE, [0])],
            },
        )
        if not enabled:
            self._raise_result("Active Directory rejected the enable-account request")

        logger.info("Created directory entry %s.", distinguished_name)
        return distinguished_name

    def attach_group(self, account_id: str, group_id: str) -> None:
        group_dn = self.resolve_group(group_id)
        if self._mock_directory:
            self._mock_directory.add_user_to_group(account_id, group_dn)
            return

        assert self.connection is not None
        added = self.connection.extend.microsoft.add_members_to_groups([account_id], [group_dn])
        if not added:
            self._raise_result(f"Unable to add {account_id} to {group_dn}")

    def resolve_group(self, group_id: str) -> str:
        """Map a catalog group name to its distinguished name.

        Values that already look like a DN are returned untouched. Names are
        matched against cn, name and sAMAccountName below ``group_search_base``.
        """

        if self._looks_like_dn(group_id):
            return group_id

        if self._mock_directory:
            group_dn = self._mock_directory.find_group(group_id)
            if group_dn:
                return group_dn
            if not self._mock_directory.has_groups:
                return group_id
            raise ExternalServiceError(f"Group {group_id} does not exist.")

        assert self.connection is not None
        escaped = self._escape_filter_value(group_id)
        self.connection.search(
            search_base=self.config.group_search_base or self.config.base_dn,
            search_filter=(
                f"(&"
                f"(objectClass=group)"
                f"(|(cn={escaped})(name={escaped})(sAMAccountName={escaped}))"
                f")"
            ),
            search_scope=SUBTREE,
            attributes=["distinguishedName"],
            size_limit=2,
        )
        entries = list(self.connection.entries)
        if not entries:
            raise ExternalServiceError(f"Group {group_id} does not exist.")
        if len(entries) > 1:
            raise ExternalServiceError(f"Group name {group_id} matches more than one group.")
        return str(entries[0].entry_dn)

    # Utilities -----------------------------------------------------------
    def _raise_result(self, prefix: str) -> None:
        result = (self.connection.result if self.connection else None) or {}
        description = result.get("description", "Unknown error")
        message = result.get("message")
        raise ExternalServiceError(
            f"{prefix} ({description})." + (f" {message}" if message else "")
        )

    @staticmethod
    def _looks_like_dn(value: str) -> bool:
        return "=" in value.split(",", 1)[0]

    @staticmethod
    def _escape_dn_value(value: str) -> str:
        escaped = "".join(f"\\{char}" if char in ',+"\\<>;=' else char for char in value)
        if escaped.startswith((" ", "#")):
            escaped = "\\" + escaped
        return escaped

    @staticmethod
    def _escape_filter_value(value: str) -> str:
        replacements = {
            "\\": r"\5c",
            "*": r"\2a",
            "(": r"\28",
            ")": r"\29",
            "\0": r"\00",
        }
        return "".join(replacements.get(char, char) for char in value)


__all__ = ["ADClient", "MockDirectory"]
