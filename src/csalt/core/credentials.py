"""Persistence of the user identity and the cached API token.

Both records are small YAML documents in the user's home directory (or
``$CSALT_HOME``). Every read holds a shared lock and every write an exclusive
lock on the record's sibling ``.lock`` file, because several csalt processes
may run at the same time.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from csalt.core.locking import LOCK_TIMEOUT, LockGuard, lock_path_for
from csalt.core.models import Identity, TokenRecord

logger = logging.getLogger(__name__)

HOME_ENV = "CSALT_HOME"
IDENTITY_FILENAME = "cacophony-user.yaml"
TOKEN_FILENAME = ".cacophony-token"


class ConfigMissingError(FileNotFoundError):
    """Raised when the identity file does not exist yet."""


class CredentialFileError(ValueError):
    """Raised when a persisted record cannot be parsed."""


class IdentityConfigError(ValueError):
    """Raised when the identity file or an identity is invalid."""


def default_base_dir() -> Path:
    """Return ``$CSALT_HOME`` when set, otherwise the user's home directory."""

    override = os.getenv(HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home()


def _optional_string(mapping: Mapping[str, Any], field: str, context: str) -> str:
    value = mapping.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise IdentityConfigError(f"{context}: field '{field}' must be a string.")
    return value


def validate_identity(identity: Identity) -> Identity:
    """Ensure both identity fields are present before any API call."""

    if not identity.server_url:
        raise IdentityConfigError("server-url missing")
    if not identity.user_name:
        raise IdentityConfigError("user-name is missing")
    return identity


class CredentialStore:
    """Reads and writes the identity and token records under ``base_dir``."""

    def __init__(
        self,
        base_dir: Path | None = None,
        lock_timeout: float = LOCK_TIMEOUT,
        identity_filename: str = IDENTITY_FILENAME,
        token_filename: str = TOKEN_FILENAME,
    ) -> None:
        self.base_dir = base_dir if base_dir is not None else default_base_dir()
        self.lock_timeout = lock_timeout
        self.identity_path = self.base_dir / identity_filename
        self.token_path = self.base_dir / token_filename

    def read_identity(self) -> Identity:
        """Load the identity record.

        Raises ``ConfigMissingError`` when the file does not exist. Fields may
        come back empty; use :func:`validate_identity` before calling the API.
        """

        if not self.identity_path.exists():
            raise ConfigMissingError(f"User config is missing: {self.identity_path}")

        try:
            data = self._read_mapping(self.identity_path)
        except CredentialFileError as exc:
            raise IdentityConfigError(str(exc)) from exc
        if data is None:
            raise ConfigMissingError(f"User config is missing: {self.identity_path}")

        context = str(self.identity_path)
        identity = Identity(
            server_url=_optional_string(data, "server-url", context),
            user_name=_optional_string(data, "user-name", context),
        )
        logger.debug("identity loaded path=%s user=%s", self.identity_path, identity.user_name)
        return identity

    def write_identity(self, identity: Identity) -> Path:
        validate_identity(identity)
        payload = {"server-url": identity.server_url, "user-name": identity.user_name}
        self._write_mapping(self.identity_path, payload)
        logger.info("identity saved path=%s", self.identity_path)
        return self.identity_path

    def read_token(self, for_user_name: str) -> str:
        """Return the cached token for ``for_user_name`` or ``""``.

        A token cached for a different user is never returned.
        """

        record = self.read_token_record()
        if record is None:
            return ""
        if record.user_name != for_user_name:
            logger.debug(
                "ignoring cached token user=%s requested=%s", record.user_name or "-", for_user_name
            )
            return ""
        return record.token

    def read_token_record(self) -> TokenRecord | None:
        try:
            data = self._read_mapping(self.token_path)
        except CredentialFileError as exc:
            logger.warning("unreadable token cache path=%s reason=\"%s\"", self.token_path, exc)
            return None
        if data is None:
            return None

        user_name = data.get("user-name")
        token = data.get("token")
        if not isinstance(user_name, str) or not isinstance(token, str):
            return None
        return TokenRecord(user_name=user_name, token=token)

    def write_token(self, user_name: str, token: str) -> Path:
        """Persist ``token`` for ``user_name``. Raises ``LockError`` on lock timeout."""

        self._write_mapping(self.token_path, {"user-name": user_name, "token": token})
        logger.debug("token cached path=%s", self.token_path, extra={"user": user_name})
        return self.token_path

    def _read_mapping(self, path: Path) -> Mapping[str, Any] | None:
        guard = LockGuard(lock_path_for(path))
        with guard.shared(self.lock_timeout):
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise CredentialFileError(f"Unable to parse {path}: {exc}") from exc

        if data is None:
            return {}
        if not isinstance(data, Mapping):
            raise CredentialFileError(f"Top-level structure of {path} must be a mapping.")
        return data

    def _write_mapping(self, path: Path, payload: Mapping[str, str]) -> None:
        text = yaml.safe_dump(dict(payload), default_flow_style=False, sort_keys=False)
        guard = LockGuard(lock_path_for(path))
        with guard.exclusive(self.lock_timeout):
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
