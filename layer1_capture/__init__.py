"""
Layer 1 — Capture
Camera session, permission checks, analysis frames and still capture.
"""
from .camera import CameraHandler
from .frame_source import CapturedImage, Frame, FrameSource, normalize_orientation
from .permissions import (
    AuthorizationStatus,
    CameraPermissionChecker,
    DevicePermissionChecker,
    REMEDIATION_HINT,
)

__all__ = [
    'AuthorizationStatus',
    'CameraHandler',
    'CameraPermissionChecker',
    'CapturedImage',
    'DevicePermissionChecker',
    'Frame',
    'FrameSource',
    'REMEDIATION_HINT',
    'normalize_orientation',
]
