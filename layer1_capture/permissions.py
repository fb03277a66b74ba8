"""
Layer 1 — Camera Permissions
Authorization state for the camera device.
"""
import logging
import os
import sys
import threading
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class AuthorizationStatus(str, Enum):
    AUTHORIZED = "authorized"
    NOT_DETERMINED = "not_determined"
    DENIED = "denied"
    RESTRICTED = "restricted"
    UNKNOWN = "unknown"


# Shown alongside a permission-denied event
REMEDIATION_HINT = (
    "Camera access is required to take a photo. "
    "Open the system settings and allow this application to use the camera "
    "(on Linux, add the service user to the 'video' group)."
)


class CameraPermissionChecker:
    """Permission capability contract."""

    def authorization_status(self) -> AuthorizationStatus:
        raise NotImplementedError

    def request_access(self, callback: Callable[[bool], None]):
        """Ask for access asynchronously; callback(granted) runs on a worker thread."""
        raise NotImplementedError


class DevicePermissionChecker(CameraPermissionChecker):
    """
    Maps /dev/videoN access rights to an authorization status.

    Non-Linux platforms report AUTHORIZED and leave the decision to OpenCV.
    """

    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index

    @property
    def device_path(self) -> str:
        return f"/dev/video{self.camera_index}"

    def authorization_status(self) -> AuthorizationStatus:
        if not sys.platform.startswith('linux'):
            return AuthorizationStatus.AUTHORIZED
        if not os.path.exists(self.device_path):
            return AuthorizationStatus.UNKNOWN
        if os.access(self.device_path, os.R_OK | os.W_OK):
            return AuthorizationStatus.AUTHORIZED
        return AuthorizationStatus.DENIED

    def request_access(self, callback: Callable[[bool], None]):
        def _check():
            granted = self.authorization_status() == AuthorizationStatus.AUTHORIZED
            logger.info(f"Camera access request for {self.device_path}: granted={granted}")
            callback(granted)

        threading.Thread(target=_check, name="camera-permission", daemon=True).start()
