"""
Service configuration
Dataclass settings populated from environment variables.
"""
import os
from dataclasses import dataclass, field
from typing import Optional


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class CameraConfig:
    """Camera device and frame delivery settings."""
    camera_index: int = 0
    width: int = 1920
    height: int = 1080
    fps: int = 30

    # Analysis frames are downscaled to this width before landmark detection
    analysis_width: int = 640

    # Clockwise rotation (degrees) that brings a raw frame upright
    device_orientation: int = 0


@dataclass
class AlignmentConfig:
    """Gaze alignment settings."""
    threshold: float = 0.05          # Max normalized eye-height difference
    max_faces: int = 2
    model_path: str = "models/face_landmarker.task"


@dataclass
class UploadConfig:
    """Upload endpoint settings."""
    endpoint_url: str = ""
    jpeg_quality: int = 80           # 0.8 compression quality
    timeout: Optional[float] = None  # None keeps the requests default


@dataclass
class ServiceConfig:
    """Top-level configuration for the capture service."""
    camera: CameraConfig = field(default_factory=CameraConfig)
    alignment: AlignmentConfig = field(default_factory=AlignmentConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"
    worker_threads: int = 2

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Build configuration from environment variables."""
        camera = CameraConfig(
            camera_index=int(os.environ.get('CAMERA_INDEX', 0)),
            width=int(os.environ.get('CAMERA_WIDTH', 1920)),
            height=int(os.environ.get('CAMERA_HEIGHT', 1080)),
            fps=int(os.environ.get('CAMERA_FPS', 30)),
            analysis_width=int(os.environ.get('ANALYSIS_WIDTH', 640)),
            device_orientation=int(os.environ.get('CAMERA_ORIENTATION', 0)),
        )
        alignment = AlignmentConfig(
            threshold=_env_float('ALIGNMENT_THRESHOLD', 0.05),
            max_faces=int(os.environ.get('MAX_FACES', 2)),
            model_path=os.environ.get('LANDMARK_MODEL_PATH', "models/face_landmarker.task"),
        )
        upload = UploadConfig(
            endpoint_url=os.environ.get('UPLOAD_URL', ""),
            jpeg_quality=int(os.environ.get('JPEG_QUALITY', 80)),
            timeout=_env_float('UPLOAD_TIMEOUT', None),
        )
        return cls(
            camera=camera,
            alignment=alignment,
            upload=upload,
            host=os.environ.get('HOST', "0.0.0.0"),
            port=int(os.environ.get('PORT', 5000)),
            log_level=os.environ.get('LOG_LEVEL', "INFO").upper(),
        )
