"""Optional local settings (``csalt-local.yml``)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from csalt.core.locking import LOCK_TIMEOUT
from csalt.core.models import TokenTTL

LOCAL_CONFIG_FILENAME = "csalt-local.yml"
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_TOKEN_TTL: TokenTTL = "long"


class SettingsError(ValueError):
    """Raised when the local settings file or its ``api`` section is invalid."""


@dataclass(slots=True)
class ApiSettings:
    """Tunables for the API client and credential store."""

    timeout: float = DEFAULT_HTTP_TIMEOUT
    token_ttl: TokenTTL = DEFAULT_TOKEN_TTL
    lock_timeout: float = LOCK_TIMEOUT


def load_local_config(config_path: Path) -> Mapping[str, Any] | None:
    """Load the local settings file if it exists and return the mapping.

    Raises ``SettingsError`` when the file exists but cannot be read or parsed.
    """

    if not config_path.exists():
        return None

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise SettingsError(f"unable to read local config file={config_path} reason=\"{exc}\"") from exc

    if not isinstance(data, Mapping):
        raise SettingsError(f"local config file={config_path} must contain a mapping")
    return data


def _positive_number(value: Any, field: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SettingsError(f"api.{field} must be a number.")
    if value <= 0:
        raise SettingsError(f"api.{field} must be greater than zero.")
    return float(value)


def _token_ttl(value: Any) -> TokenTTL:
    if value is None:
        return DEFAULT_TOKEN_TTL
    if value not in ("short", "medium", "long"):
        raise SettingsError(f"invalid api.token_ttl '{value}'. Allowed: short, medium, long.")
    return value  # type: ignore[return-value]


def parse_api_settings(local_config: Mapping[str, Any] | None) -> ApiSettings:
    section = local_config.get("api") if isinstance(local_config, Mapping) else None
    if section is None:
        return ApiSettings()
    if not isinstance(section, Mapping):
        raise SettingsError("The 'api' section must be a mapping.")

    return ApiSettings(
        timeout=_positive_number(section.get("timeout"), "timeout", DEFAULT_HTTP_TIMEOUT),
        token_ttl=_token_ttl(section.get("token_ttl")),
        lock_timeout=_positive_number(section.get("lock_timeout"), "lock_timeout", LOCK_TIMEOUT),
    )


def resolve_api_settings(
    local_config: Mapping[str, Any] | None, logger: logging.Logger
) -> ApiSettings:
    """Parse the ``api`` section, falling back to defaults when it is invalid."""

    try:
        return parse_api_settings(local_config)
    except SettingsError as exc:
        logger.warning("%s Using defaults.", exc)
        return ApiSettings()
