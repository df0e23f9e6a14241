"""Command line interface for csalt."""

from __future__ import annotations

import argparse
import getpass
import logging
from pathlib import Path
from typing import Callable, Sequence

from csalt.core.credentials import (
    ConfigMissingError,
    CredentialStore,
    IdentityConfigError,
    default_base_dir,
    validate_identity,
)
from csalt.core.locking import LockError
from csalt.core.logging import setup_logging
from csalt.core.models import Identity, Session
from csalt.core.query import DeviceQueryError, parse_device_query
from csalt.core.settings import (
    LOCAL_CONFIG_FILENAME,
    SettingsError,
    load_local_config,
    resolve_api_settings,
)
from csalt.salt.command import (
    NoValidDevicesError,
    build_salt_command,
    run_salt,
    salt_passthrough_command,
)
from csalt.userapi.auth import (
    AuthController,
    MaxAttemptsExceededError,
    PasswordPrompt,
    PasswordUnavailableError,
)
from csalt.userapi.client import DirectoryClient, DirectoryClientError

Prompt = Callable[[str], str]
SaltRunner = Callable[[Sequence[str]], int]


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""

    parser = argparse.ArgumentParser(
        prog="csalt",
        description=(
            "Run salt against Cacophony devices addressed by group and device name. "
            "Names are translated to salt minion ids through the Cacophony API."
        ),
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging. Overrides logging.level in the local settings.",
    )
    parser.add_argument(
        "--local-config",
        type=Path,
        default=None,
        help=f"Path to the local settings file (YAML). Defaults to ~/{LOCAL_CONFIG_FILENAME}.",
    )
    parser.add_argument(
        "devices",
        nargs="?",
        default="",
        help="Space separated groups and devices, e.g. \"group1 group2:device1\"",
    )
    parser.add_argument(
        "commands",
        nargs=argparse.REMAINDER,
        help="Salt function and arguments, e.g. test.ping",
    )
    return parser


def main(
    argv: Sequence[str] | None = None,
    *,
    prompt: Prompt = input,
    prompt_password: PasswordPrompt = getpass.getpass,
    runner: SaltRunner = run_salt,
) -> int:
    """Run the CLI."""

    parser = build_parser()
    args = parser.parse_args(argv)

    base_dir = default_base_dir()
    local_config_path = args.local_config or base_dir / LOCAL_CONFIG_FILENAME
    settings_error: SettingsError | None = None
    try:
        local_config = load_local_config(local_config_path)
    except SettingsError as exc:
        local_config = None
        settings_error = exc
    logger = setup_logging(local_config, cli_level=logging.DEBUG if args.debug else None)
    if settings_error is not None:
        logger.warning("%s Using defaults.", settings_error)

    try:
        query = parse_device_query(args.devices)
    except DeviceQueryError as exc:
        parser.error(str(exc))

    commands = list(args.commands)
    if not commands:
        if query.raw.strip():
            return runner(salt_passthrough_command([query.raw]))
        parser.error("A command must be specified")
    if not query.has_values:
        return runner(salt_passthrough_command(commands))

    settings = resolve_api_settings(local_config, logger)
    store = CredentialStore(base_dir, lock_timeout=settings.lock_timeout)

    try:
        identity = load_identity(store, prompt, logger)
        with DirectoryClient(Session(identity=identity), timeout=settings.timeout) as client:
            controller = AuthController(
                client, store, prompt_password=prompt_password, token_ttl=settings.token_ttl
            )
            devices = controller.resolve(query)
        salt_args = build_salt_command(identity.server_url, devices, commands)
    except (
        DirectoryClientError,
        IdentityConfigError,
        LockError,
        OSError,
        MaxAttemptsExceededError,
        NoValidDevicesError,
        PasswordUnavailableError,
    ) as exc:
        logger.error("%s", exc)
        return 1

    logger.info("resolved %d device(s)", len(devices))
    return runner(salt_args)


def load_identity(store: CredentialStore, prompt: Prompt, logger: logging.Logger) -> Identity:
    """Load the identity, asking for and saving any missing fields."""

    try:
        identity = store.read_identity()
    except ConfigMissingError:
        identity = Identity()

    if identity.is_complete():
        return identity

    print("User configuration missing")
    try:
        if not identity.server_url:
            identity.server_url = prompt("Enter API ServerURL: ").strip()
        if not identity.user_name:
            identity.user_name = prompt("Enter Username: ").strip()
    except EOFError as exc:
        raise IdentityConfigError("User configuration missing and input is closed") from exc
    validate_identity(identity)

    try:
        store.write_identity(identity)
    except (LockError, OSError) as exc:
        logger.error("Error saving config %s", exc)
    return identity
