"""Building and running salt commands for resolved devices."""

from __future__ import annotations

import logging
import subprocess
from typing import Sequence
from urllib.parse import urlsplit

from csalt.core.models import Device
from csalt.userapi.client import TEST_API_HOST

logger = logging.getLogger(__name__)

SALT_PREFIX = "pi"
TEST_SALT_PREFIX = "pi-test"


class NoValidDevicesError(RuntimeError):
    """Raised when a lookup returned no devices to target."""


def salt_prefix(server_url: str) -> str:
    """Return the minion id prefix used for devices of ``server_url``."""

    try:
        host = urlsplit(server_url).hostname
    except ValueError as exc:
        logger.warning("unable to parse server url=%s reason=\"%s\"", server_url, exc)
        return SALT_PREFIX
    if host == TEST_API_HOST:
        return TEST_SALT_PREFIX
    return SALT_PREFIX


def salt_targets(server_url: str, devices: Sequence[Device]) -> str:
    """Return the comma separated minion ids for ``devices``."""

    prefix = salt_prefix(server_url)
    return ",".join(f"{prefix}-{device.salt_id}" for device in devices)


def build_salt_command(server_url: str, devices: Sequence[Device], commands: Sequence[str]) -> list[str]:
    if not devices:
        raise NoValidDevicesError("No valid devices found")

    args = ["sudo", "salt"]
    if len(devices) > 1:
        args.append("-L")
    args.append(salt_targets(server_url, devices))
    args.extend(commands)
    return args


def salt_passthrough_command(arguments: Sequence[str]) -> list[str]:
    """Return a salt command using ``arguments`` unchanged."""

    return ["sudo", "salt", *arguments]


def run_salt(args: Sequence[str]) -> int:
    """Run ``args`` with inherited stdio and return the exit status."""

    logger.debug("running command=%s", " ".join(args))
    try:
        completed = subprocess.run(list(args), check=False)
    except FileNotFoundError:
        logger.error("command not found: %s", args[0])
        return 127
    if completed.returncode != 0:
        logger.warning("salt exited status=%d", completed.returncode)
    return completed.returncode
