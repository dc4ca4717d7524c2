"""
Error Handling System
Provides consistent error responses across capture and processing layers
"""
import logging

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """Base exception for capture pipeline errors"""
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
class CameraError(CaptureError):
    """Camera-related errors"""
    pass


class CapabilityUnsupportedError(CameraError):
    """Device feature absent or rejected. Recovered locally, never surfaced."""
    def __init__(self, feature, reason=None):
        super().__init__(
            message=f"Camera capability not available: {feature}",
            error_code="CAPABILITY_UNSUPPORTED",
            details={
                "feature": feature,
                "reason": str(reason) if reason is not None else None
            }
        )
        self.feature = feature


class FrameUnavailableError(CameraError):
    """Live source has no usable frame to sample or capture"""
    def __init__(self, reason=None):
        super().__init__(
            message="No frame available from camera",
            error_code="FRAME_UNAVAILABLE",
            details={
                "reason": reason,
                "suggestion": "Wait for the camera stream to start, then retry the capture"
            }
        )


class DeviceAccessError(CameraError):
    """Capture device cannot be reached"""
    def __init__(self, device, reason=None):
        super().__init__(
            message=f"Cannot access camera device {device}",
            error_code="DEVICE_ACCESS_FAILED",
            details={
                "device": str(device),
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotFoundError(DeviceAccessError):
    """Camera device not found"""
    def __init__(self, camera_index):
        CaptureError.__init__(
            self,
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class SessionStateError(CameraError):
    """Operation not allowed in the current session state"""
    def __init__(self, state, operation):
        super().__init__(
            message=f"Cannot {operation} while session is {state}",
            error_code="SESSION_STATE_INVALID",
            details={
                "state": state,
                "operation": operation,
                "suggestion": "Call /start_camera endpoint first"
            }
        )


class CaptureInProgressError(CameraError):
    """A capture sequence is already running"""
    def __init__(self):
        super().__init__(
            message="A capture is already in progress",
            error_code="CAPTURE_IN_PROGRESS",
            details={
                "suggestion": "Wait for the current capture to finish and retry"
            }
        )


# Layer 2 Errors - Image Processing
class ProcessingError(CaptureError):
    """Image processing errors"""
    pass


class InvalidFilterOptionsError(ProcessingError):
    """Filter options out of range or malformed"""
    def __init__(self, option, value, reason):
        super().__init__(
            message=f"Invalid filter option {option}={value!r}: {reason}",
            error_code="INVALID_FILTER_OPTIONS",
            details={
                "option": option,
                "value": repr(value),
                "reason": reason
            }
        )


class ImageDecodeError(ProcessingError):
    """Input bytes are not a decodable image"""
    def __init__(self, reason=None):
        super().__init__(
            message="Could not decode image data",
            error_code="INVALID_IMAGE",
            details={
                "reason": reason,
                "suggestion": "Upload a JPEG or PNG image"
            }
        )


class ImageEncodeError(ProcessingError):
    """Processed pixels could not be encoded"""
    def __init__(self, reason=None):
        super().__init__(
            message="Failed to encode processed image",
            error_code="IMAGE_ENCODE_FAILED",
            details={
                "reason": reason
            }
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

    if isinstance(error, CaptureError):
        # Known capture error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }


def status_code_for(error):
    """Map an error to the HTTP status the API returns for it"""
    if isinstance(error, (InvalidFilterOptionsError, ImageDecodeError)):
        return 400
    if isinstance(error, CaptureInProgressError):
        return 409
    if isinstance(error, SessionStateError):
        return 409
    if isinstance(error, FrameUnavailableError):
        return 503
    if isinstance(error, DeviceAccessError):
        return 503
    if isinstance(error, CaptureError):
        return 422
    return 500
