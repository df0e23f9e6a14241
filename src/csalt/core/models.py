"""Data models shared by the credential store, API client and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


TokenTTL = Literal["short", "medium", "long"]


@dataclass(slots=True)
class Identity:
    """Account and API server targeted by an invocation."""

    server_url: str = ""
    user_name: str = ""

    def is_complete(self) -> bool:
        return bool(self.server_url) and bool(self.user_name)


@dataclass(slots=True)
class TokenRecord:
    """Cached token and the user it was issued for."""

    user_name: str
    token: str


@dataclass(slots=True)
class Session:
    """Per-invocation authentication state."""

    identity: Identity
    token: str = ""
    authenticated: bool = False


@dataclass(frozen=True, slots=True)
class DeviceName:
    """A device addressed by group and device name."""

    group_name: str
    device_name: str

    def to_query(self) -> dict[str, str]:
        return {"groupname": self.group_name, "devicename": self.device_name}


@dataclass(frozen=True, slots=True)
class DeviceQuery:
    """Groups and devices requested on the command line."""

    groups: tuple[str, ...] = ()
    devices: tuple[DeviceName, ...] = ()
    raw: str = ""

    @property
    def has_values(self) -> bool:
        return bool(self.groups) or bool(self.devices)


@dataclass(frozen=True, slots=True)
class Device:
    """A device resolved by the API server."""

    group_name: str
    device_name: str
    salt_id: int
