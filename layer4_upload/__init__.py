"""
Layer 4 — Upload
Single-attempt JPEG upload with classified outcomes.
"""
from .uploader import (
    CONTENT_TYPE,
    ImageUploader,
    UploadOutcome,
    create_upload_session,
    validate_endpoint,
)

__all__ = [
    'CONTENT_TYPE',
    'ImageUploader',
    'UploadOutcome',
    'create_upload_session',
    'validate_endpoint',
]
