"""Authentication flow around :class:`DirectoryClient`.

The controller reuses a cached token when one exists for the active user,
otherwise asks for the password (at most ``max_attempts`` times) and caches a
long lived, read-only token for later invocations. A device lookup rejected
with 401 triggers one re-authentication and one retry.
"""

from __future__ import annotations

import getpass
import logging
from enum import Enum
from typing import Callable

from csalt.core.credentials import CredentialStore
from csalt.core.locking import LockError
from csalt.core.models import Device, DeviceQuery, TokenTTL
from csalt.userapi.client import (
    LONG_TTL,
    AuthenticationError,
    DirectoryClient,
    InvalidInputError,
)

logger = logging.getLogger(__name__)

MAX_PASSWORD_ATTEMPTS = 3
PASSWORD_PROMPT = "Enter Password: "
RETRY_PROMPT = "Incorrect user/password try again\nEnter Password: "

PasswordPrompt = Callable[[str], str]


class MaxAttemptsExceededError(RuntimeError):
    """Raised when the password was rejected ``max_attempts`` times."""


class PasswordUnavailableError(RuntimeError):
    """Raised when no password can be read, e.g. stdin is closed."""


class AuthState(str, Enum):
    NO_CREDENTIAL = "no-credential"
    AWAITING_PASSWORD = "awaiting-password"
    AUTHENTICATED = "authenticated"


class AuthController:
    """Drives token reuse, password prompting and the single 401 retry."""

    def __init__(
        self,
        client: DirectoryClient,
        store: CredentialStore,
        prompt_password: PasswordPrompt = getpass.getpass,
        max_attempts: int = MAX_PASSWORD_ATTEMPTS,
        token_ttl: TokenTTL = LONG_TTL,
    ) -> None:
        self.client = client
        self.store = store
        self.prompt_password = prompt_password
        self.max_attempts = max_attempts
        self.token_ttl = token_ttl
        self.state = AuthState.NO_CREDENTIAL
        self.token_cached = False
        self._log_extra = {"user": client.user_name}

    def start(self) -> AuthState:
        """Load a cached token or authenticate interactively."""

        token = self.store.read_token(self.client.user_name)
        if token:
            self.client.session.token = token
            self.state = AuthState.AUTHENTICATED
            logger.debug("using cached token", extra=self._log_extra)
            return self.state

        self.authenticate()
        return self.state

    def authenticate(self) -> None:
        """Prompt for the password until accepted, then cache a scoped token."""

        self.state = AuthState.AWAITING_PASSWORD
        self.client.session.authenticated = False
        attempts = 0
        prompt = f"Authentication is required for {self.client.user_name}\n{PASSWORD_PROMPT}"
        while True:
            try:
                password = self.prompt_password(prompt)
            except EOFError as exc:
                raise PasswordUnavailableError("No password available: input is closed") from exc
            try:
                self.client.authenticate(password)
                break
            except (InvalidInputError, AuthenticationError) as exc:
                attempts += 1
                logger.info("password rejected attempt=%d reason=\"%s\"", attempts, exc, extra=self._log_extra)
                if attempts >= self.max_attempts:
                    raise MaxAttemptsExceededError("Max Password Attempts") from exc
            prompt = RETRY_PROMPT

        self.state = AuthState.AUTHENTICATED
        self._cache_scoped_token()

    def resolve(self, query: DeviceQuery) -> list[Device]:
        """Resolve ``query``, re-authenticating once if the token is rejected."""

        if self.state is not AuthState.AUTHENTICATED:
            self.start()

        try:
            return self.client.resolve_devices(query)
        except AuthenticationError:
            logger.info("token rejected, re-authenticating", extra=self._log_extra)

        self.authenticate()
        return self.client.resolve_devices(query)

    def _cache_scoped_token(self) -> None:
        scoped = self.client.request_scoped_token(self.token_ttl)
        try:
            self.store.write_token(self.client.user_name, scoped)
        except LockError as exc:
            self.token_cached = False
            logger.warning("token not cached reason=\"%s\"", exc, extra=self._log_extra)
            return
        self.token_cached = True
