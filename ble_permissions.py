# Author: Omi Shrestha

"""
Runtime permissions needed before scanning.

Only Android gates BLE scanning behind runtime permissions. API 31+ needs
BLUETOOTH_SCAN and BLUETOOTH_CONNECT; API 23-30 needs location. Desktop
stacks (BlueZ, CoreBluetooth, WinRT) are gated by the OS outside the process.
A refusal is logged and scanning goes ahead regardless.
"""

import logging
import platform
import sys

from rover_errors import PermissionDenied

logger = logging.getLogger(__name__)

BLUETOOTH_SCAN = "android.permission.BLUETOOTH_SCAN"
BLUETOOTH_CONNECT = "android.permission.BLUETOOTH_CONNECT"
ACCESS_FINE_LOCATION = "android.permission.ACCESS_FINE_LOCATION"

ANDROID_12_API = 31
ANDROID_6_API = 23


class PermissionBackend:
    """OS permission surface. Each call returns True when granted."""

    async def check(self, permission):
        raise NotImplementedError

    async def request(self, permission):
        raise NotImplementedError

    async def request_multiple(self, permissions):
        """Return {permission: granted}."""
        raise NotImplementedError


class GrantedBackend(PermissionBackend):
    """Backend for platforms without runtime BLE permissions."""

    async def check(self, permission):
        return True

    async def request(self, permission):
        return True

    async def request_multiple(self, permissions):
        return {p: True for p in permissions}


def detect_platform():
    """Return (os_name, os_version) where version is the Android API level or 0."""
    if sys.platform == "android":
        android_ver = getattr(platform, "android_ver", None)
        api_level = android_ver().api_level if android_ver else 0
        return "android", api_level
    return sys.platform, 0


class PermissionGate:
    def __init__(self, backend=None, os_name=None, os_version=None):
        detected_name, detected_version = detect_platform()
        self.os_name = os_name if os_name is not None else detected_name
        self.os_version = os_version if os_version is not None else detected_version
        self.backend = backend or GrantedBackend()
        self.resolved = False
        self.granted = None

    def required_permissions(self):
        if self.os_name != "android":
            return []
        if self.os_version >= ANDROID_12_API:
            return [BLUETOOTH_SCAN, BLUETOOTH_CONNECT]
        if self.os_version >= ANDROID_6_API:
            return [ACCESS_FINE_LOCATION]
        return []

    async def resolve(self):
        """Request whatever this platform needs. Returns True when everything was granted."""
        if self.resolved:
            return self.granted

        try:
            self.granted = await self._request()
        except PermissionDenied as e:
            logger.error("[PERMISSIONS] %s", e)
            self.granted = False
        self.resolved = True

        if self.granted:
            logger.debug("[PERMISSIONS] runtime permissions OK (%s %s)", self.os_name, self.os_version)
        else:
            logger.error("[PERMISSIONS] User refuses runtime permissions (%s %s)", self.os_name, self.os_version)
        return self.granted

    async def _request(self):
        required = self.required_permissions()
        if not required:
            return True

        if self.os_version >= ANDROID_12_API:
            result = await self.backend.request_multiple(required)
            return all(result.get(p, False) for p in required)

        # API 23-30: check first, ask only when missing
        permission = required[0]
        if await self.backend.check(permission):
            logger.debug("[PERMISSIONS] %s already granted", permission)
            return True
        return await self.backend.request(permission)
