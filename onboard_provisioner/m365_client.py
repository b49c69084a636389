"""Microsoft 365 Graph helper utilities."""
from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, Mapping, Optional

import msal
import requests

from .config import M365Config
from .errors import ExternalServiceError, PreconditionError
from .models import DerivedIdentity


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30

_OBJECT_ID = re.compile(r"^[0-9a-fA-F]{8}(-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12}$")

# Directory attribute names mapped to their Graph user property.
_GRAPH_ATTRIBUTES = {
    "givenName": "givenName",
    "sn": "surname",
    "displayName": "displayName",
    "title": "jobTitle",
    "mobile": "mobilePhone",
    "company": "companyName",
    "department": "department",
    "physicalDeliveryOfficeName": "officeLocation",
    "streetAddress": "streetAddress",
    "l": "city",
    "st": "state",
    "postalCode": "postalCode",
    "c": "country",
}

logger = logging.getLogger(__name__)


class M365ClientError(ExternalServiceError):
    """Base exception for Microsoft 365 client operations."""


class M365ConfigurationError(M365ClientError):
    """Raised when the Microsoft 365 integration is not configured."""


class M365GraphError(M365ClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


class M365Client:
    """Microsoft Graph session used to create cloud accounts and attach groups."""

    def __init__(self, config: M365Config) -> None:
        if not config.has_credentials:
            raise M365ConfigurationError(
                "Microsoft 365 credentials are not configured. "
                "Provide tenant_id, client_id, and client_secret."
            )

        self._config = config
        self._authority = f"https://login.microsoftonline.com/{config.tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=self._authority,
        )
        self._token_lock = threading.Lock()
        self._session = requests.Session()
        self._signed_in = False

    # ------------------------------------------------------------------ #
    # Session / token handling                                           #
    # ------------------------------------------------------------------ #
    @property
    def is_authenticated(self) -> bool:
        return self._signed_in

    def sign_in(self) -> None:
        """Acquire a Graph token up front so later writes fail fast if access is denied."""

        self._acquire_token()
        self._signed_in = True
        logger.info("Signed in to Microsoft Graph for tenant %s.", self._config.tenant_id)

    def close(self) -> None:
        self._session.close()
        self._signed_in = False

    def _acquire_token(self) -> str:
        with self._token_lock:
            result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
            if not result:
                result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)

        if "access_token" not in result:
            raise M365GraphError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        if not self._signed_in:
            raise PreconditionError("Sign in to Microsoft 365 before making directory changes.")

        url = GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        try:
            response = self._session.request(
                method,
                url,
                timeout=REQUEST_TIMEOUT,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise M365ClientError(f"Microsoft Graph request failed: {exc}") from exc

        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            raise M365GraphError(response.status_code, code, message)

        return response.json()

    # ------------------------------------------------------------------ #
    # Directory contract                                                 #
    # ------------------------------------------------------------------ #
    def find_user(self, query: str, select: Optional[str] = None) -> Optional[Dict[str, Any]]:
        cleaned = (query or "").strip()
        if not cleaned:
            return None
        escaped = cleaned.replace("'", "''")
        filters = [
            f"mailNickname eq '{escaped}'",
            f"startswith(userPrincipalName,'{escaped}@')",
        ]
        params = {"$filter": " or ".join(filters)}
        if select:
            params["$select"] = select
        result = self._request("GET", "/users", params=params)
        values = result.get("value") or []
        return values[0] if values else None

    def exists(self, handle: str) -> bool:
        return self.find_user(handle, select="id,userPrincipalName") is not None

    def create_account(
        self,
        identity: DerivedIdentity,
        attributes: Mapping[str, Any],
        temporary_password: str,
    ) -> str:
        """Create an enabled cloud user that must change its password at first sign-in."""

        payload: Dict[str, Any] = {
            "accountEnabled": True,
            "mailNickname": identity.account_handle,
            "userPrincipalName": identity.principal_name,
            "mail": identity.primary_email,
            "passwordProfile": {
                "forceChangePasswordNextSignIn": True,
                "password": temporary_password,
            },
        }
        for key, value in attributes.items():
            graph_key = _GRAPH_ATTRIBUTES.get(key)
            if graph_key and value:
                payload[graph_key] = value
        payload.setdefault("displayName", identity.account_handle)
        if self._config.default_usage_location:
            payload["usageLocation"] = self._config.default_usage_location

        created = self._request("POST", "/users", json=payload)
        user_id = str(created.get("id") or "")
        if not user_id:
            raise M365ClientError("Microsoft Graph did not return an id for the created user.")
        return user_id

    def attach_group(self, account_id: str, group_id: str) -> None:
        object_id = self.resolve_group(group_id)
        payload = {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{account_id}"}
        self._request("POST", f"/groups/{object_id}/members/$ref", json=payload)

    def resolve_group(self, group_id: str) -> str:
        """Return the object id for a catalog group, looking display names up in Graph."""

        if _OBJECT_ID.match(group_id):
            return group_id
        escaped = group_id.replace("'", "''")
        params = {
            "$filter": f"displayName eq '{escaped}'",
            "$select": "id,displayName",
            "$top": "2",
        }
        values = self._request("GET", "/groups", params=params).get("value") or []
        if not values:
            raise M365ClientError(f"Group {group_id} does not exist.")
        if len(values) > 1:
            raise M365ClientError(f"Group name {group_id} matches more than one group.")
        return str(values[0]["id"])


__all__ = [
    "M365Client",
    "M365ClientError",
    "M365ConfigurationError",
    "M365GraphError",
]
