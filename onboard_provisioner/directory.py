"""Collaborator contracts used by the orchestrator and the factory that picks one."""
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from .ad_client import ADClient
from .config import AppConfig
from .models import DerivedIdentity


@runtime_checkable
class Directory(Protocol):
    def exists(self, handle: str) -> bool: ...

    def create_account(
        self,
        identity: DerivedIdentity,
        attributes: Mapping[str, Any],
        temporary_password: str,
    ) -> str: ...

    def attach_group(self, account_id: str, group_id: str) -> None: ...


@runtime_checkable
class IdentitySession(Protocol):
    @property
    def is_authenticated(self) -> bool: ...


def open_directory(
    config: AppConfig, cloud_only: bool, session: Optional[Any] = None
) -> Optional[Directory]:
    """Return the directory an employee is created in.

    Cloud-only employees go straight to Microsoft Graph through the signed-in
    session. Everyone else is created in Active Directory; ``None`` means no
    LDAP settings exist and the orchestrator reports a precondition failure.
    """

    if cloud_only:
        return session
    if config.ldap is None:
        return None
    return ADClient(config.ldap)


__all__ = ["Directory", "IdentitySession", "open_directory"]
