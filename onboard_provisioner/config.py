"""Settings loading utilities for the onboarding provisioner."""
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "ONBOARD_CONFIG"
ENV_PREFIX = "ONBOARD_"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class LDAPConfig:
    """Settings required to connect to Active Directory via LDAP."""

    server_uri: str
    user_dn: str
    password: str
    base_dn: str
    user_ou: str
    use_ssl: bool = True
    mock_data_file: Optional[Path] = None
    group_search_base: Optional[str] = None


@dataclass
class M365Config:
    """Settings for the Microsoft 365 / Graph integration."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    default_usage_location: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)


@dataclass
class StorageConfig:
    """Filesystem locations used by the application."""

    catalog_file: Path = Path("config/onboarding.json")


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    ldap: Optional[LDAPConfig] = None
    m365: M365Config = field(default_factory=M365Config)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    try:
        with path.open("r", encoding="utf-8") as file:
            payload = yaml.safe_load(file) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file '{path}' could not be parsed: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with ``ONBOARD_<SECTION>__<KEY>`` variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a settings file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _load_ldap(section: Optional[Dict[str, Any]]) -> Optional[LDAPConfig]:
    if not section:
        return None
    try:
        return LDAPConfig(
            server_uri=str(section["server_uri"]),
            user_dn=str(section.get("user_dn") or ""),
            password=str(section.get("password") or ""),
            base_dn=str(section["base_dn"]),
            user_ou=str(section["user_ou"]),
            use_ssl=to_bool(section.get("use_ssl", True)),
            mock_data_file=_optional_path(section.get("mock_data_file")),
            group_search_base=_optional_str(section.get("group_search_base")),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing LDAP configuration key: {exc}.") from exc


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application settings from disk and environment variables."""

    config_dict = _load_config_dict(path)

    m365_section = config_dict.get("m365") or {}
    m365_config = M365Config(
        tenant_id=_optional_str(m365_section.get("tenant_id")),
        client_id=_optional_str(m365_section.get("client_id")),
        client_secret=_optional_str(m365_section.get("client_secret")),
        default_usage_location=_optional_str(m365_section.get("default_usage_location")),
    )

    storage_section = config_dict.get("storage") or {}
    storage_config = StorageConfig(
        catalog_file=_optional_path(storage_section.get("catalog_file"))
        or StorageConfig().catalog_file,
    )

    logging_section = config_dict.get("logging") or {}
    logging_config = LoggingConfig(
        level=str(logging_section.get("level") or LoggingConfig().level).upper(),
    )

    return AppConfig(
        ldap=_load_ldap(config_dict.get("ldap")),
        m365=m365_config,
        storage=storage_config,
        logging=logging_config,
    )


def configure_logging(level: str = "INFO") -> None:
    """Install a text log handler on the root logger."""

    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        raise ConfigurationError(f"Unknown log level '{level}'.")
    logging.basicConfig(level=numeric, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, force=True)


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "LDAPConfig",
    "LoggingConfig",
    "M365Config",
    "StorageConfig",
    "configure_logging",
    "ensure_default_config",
    "load_config",
    "to_bool",
]
