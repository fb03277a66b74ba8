"""
Layer 3 — Crop
Manual crop contract and the browser-driven collaborator.
"""
from .cropper import (
    AspectRatio,
    CropCancelled,
    CropCollaborator,
    CroppedImage,
    CropRect,
    WebCropCollaborator,
    apply_crop,
    check_aspect_ratio,
)

__all__ = [
    'AspectRatio',
    'CropCancelled',
    'CropCollaborator',
    'CropRect',
    'CroppedImage',
    'WebCropCollaborator',
    'apply_crop',
    'check_aspect_ratio',
]
