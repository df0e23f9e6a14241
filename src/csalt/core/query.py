"""Parsing of the device/group argument."""

from __future__ import annotations

from csalt.core.models import DeviceName, DeviceQuery


class DeviceQueryError(ValueError):
    """Raised when the device argument cannot be parsed."""


def parse_device_query(text: str) -> DeviceQuery:
    """Parse a space separated list of groups and devices.

    ``group:device`` names a device, ``group`` or ``group:`` a whole group.
    Duplicates are dropped and the first-seen order is kept.
    """

    groups: list[str] = []
    devices: list[DeviceName] = []

    for item in text.split():
        group, sep, device = item.partition(":")
        if sep and not group:
            raise DeviceQueryError("Groupname is required for devices")
        if device:
            entry = DeviceName(group_name=group, device_name=device)
            if entry not in devices:
                devices.append(entry)
        elif group not in groups:
            groups.append(group)

    return DeviceQuery(groups=tuple(groups), devices=tuple(devices), raw=text)
