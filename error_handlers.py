"""
Error Handling System
Provides consistent error reporting across all capture layers
"""
import logging

logger = logging.getLogger(__name__)


class GazeCaptureError(Exception):
    """Base exception for gaze capture errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Camera
class CameraPermissionError(GazeCaptureError):
    """Camera access is not authorized"""
    def __init__(self, status, remediation=None):
        super().__init__(
            message=f"Camera access not authorized ({status})",
            error_code="CAMERA_PERMISSION_REQUIRED",
            details={
                "status": status,
                "suggestion": remediation or "Grant camera access in the system settings and retry"
            }
        )


class CaptureError(GazeCaptureError):
    """Camera and still-capture errors"""
    pass


class CameraNotFoundError(CaptureError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CaptureError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CaptureError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start the camera first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class FrameCaptureError(CaptureError):
    """Failed to read a frame"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or restart the camera"
            }
        )


class NoVideoConnectionError(CaptureError):
    """Still capture requested without a live video connection"""
    def __init__(self, reason=None):
        super().__init__(
            message="No valid video connection for still capture",
            error_code="NO_VIDEO_CONNECTION",
            details={
                "reason": reason,
                "suggestion": "Start the camera and wait for the preview before capturing"
            }
        )


# Layer 2 Errors - Landmark detection
class DetectionError(GazeCaptureError):
    """Landmark detection failed for a single frame"""
    def __init__(self, reason):
        super().__init__(
            message=f"Landmark detection failed: {reason}",
            error_code="DETECTION_FAILED",
            details={"reason": str(reason)}
        )


# Layer 3 Errors - Crop
class CropError(GazeCaptureError):
    """Crop answer could not be applied"""
    def __init__(self, reason):
        super().__init__(
            message=f"Invalid crop: {reason}",
            error_code="CROP_INVALID",
            details={
                "reason": str(reason),
                "suggestion": "Select a square region inside the image"
            }
        )


# Layer 4 Errors - Upload
class UploadError(GazeCaptureError):
    """Upload stage errors"""
    pass


class InvalidEndpointError(UploadError):
    """Upload endpoint missing or malformed"""
    def __init__(self, endpoint_url):
        super().__init__(
            message=f"Invalid upload endpoint: {endpoint_url!r}",
            error_code="INVALID_ENDPOINT",
            details={
                "endpoint_url": endpoint_url,
                "suggestion": "Set UPLOAD_URL to an http(s) URL"
            }
        )


class EncodingError(UploadError):
    """Image could not be encoded for transport"""
    def __init__(self, reason):
        super().__init__(
            message="Failed to encode image as JPEG",
            error_code="ENCODING_FAILED",
            details={"reason": str(reason)}
        )


class TransportError(UploadError):
    """Network-level failure during upload"""
    def __init__(self, reason):
        super().__init__(
            message=f"Upload transport failed: {reason}",
            error_code="TRANSPORT_FAILED",
            details={
                "reason": str(reason),
                "suggestion": "Check network connectivity and endpoint availability"
            }
        )


class ServerError(UploadError):
    """Endpoint answered with a non-success status"""
    def __init__(self, status_code):
        self.status_code = status_code
        super().__init__(
            message=f"Upload endpoint returned HTTP {status_code}",
            error_code="SERVER_ERROR",
            details={"status_code": status_code}
        )


class InvalidResponseError(UploadError):
    """Endpoint response did not have the expected shape"""
    def __init__(self, reason="Empty response body"):
        super().__init__(
            message="Invalid response from upload endpoint",
            error_code="INVALID_RESPONSE",
            details={"reason": reason}
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, GazeCaptureError):
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()

    logger.error(f"Unexpected error: {error}")
    logger.error("Full traceback:", exc_info=error)
    return {
        "success": False,
        "error": "An unexpected error occurred",
        "error_code": "UNEXPECTED_ERROR",
        "details": {
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    }
