"""
Layer 1 — OpenCV Camera
USB camera backend over V4L2. Implements both the track (capabilities,
constraints) and the frame source used by the capture orchestrator.
"""
import asyncio
import logging
import os
import sys
from typing import Any, Dict, Mapping, Optional, Tuple

import cv2
import numpy as np

from error_handlers import CameraNotFoundError, CapabilityUnsupportedError, DeviceAccessError
from .capabilities import FOCUS_CONTINUOUS, FOCUS_CONTINUOUS_PICTURE
from .device import CameraTrack, FrameSource, StreamPreferences

logger = logging.getLogger(__name__)

FOCUS_MANUAL = 'manual'


class OpenCVCamera(CameraTrack, FrameSource):
    """
    V4L2 camera handle. UVC devices expose zoom and autofocus through
    OpenCV properties; there is no torch control.
    """

    DEFAULT_CONFIG = {
        'codec': 'MJPG',
        'fps': 30,
        'buffer_size': 1,  # Minimal buffer for low latency
    }

    def __init__(
        self,
        camera_index: int = 0,
        preferences: Optional[StreamPreferences] = None,
        zoom_range: Optional[Tuple[float, float]] = None,
        config: Optional[dict] = None
    ):
        """
        Initialize camera handler.

        Args:
            camera_index: V4L2 device index (e.g., 2 for /dev/video2)
            preferences: Requested resolution and facing mode
            zoom_range: (min, max) CAP_PROP_ZOOM range, when the device has one
            config: Optional codec/fps/buffer override
        """
        self.camera_index = camera_index
        self.preferences = preferences or StreamPreferences()
        self.zoom_range = zoom_range
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None

        self.actual_width = 0
        self.actual_height = 0

        logger.info(f"OpenCVCamera created for /dev/video{camera_index}")

    def _check_device_exists(self) -> bool:
        if not sys.platform.startswith('linux'):
            return True
        device_path = f"/dev/video{self.camera_index}"
        exists = os.path.exists(device_path)
        if not exists:
            logger.error(f"Camera device not found: {device_path}")
        return exists

    def initialize(self) -> bool:
        """
        Open and configure the camera.

        Raises:
            CameraNotFoundError: If camera device doesn't exist
            DeviceAccessError: If camera fails to open
        """
        if self.is_opened():
            logger.debug("Camera already initialized")
            return True

        if not self._check_device_exists():
            raise CameraNotFoundError(self.camera_index)

        logger.info(f"Initializing camera at /dev/video{self.camera_index}")
        self.camera = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)

        if not self.camera.isOpened():
            self.camera = None
            raise DeviceAccessError(
                f"/dev/video{self.camera_index}",
                reason="Failed to open camera device"
            )

        self._configure_camera()

        self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))

        prefs = self.preferences
        if self.actual_width < prefs.min_width or self.actual_height < prefs.min_height:
            logger.warning(
                f"Camera resolution {self.actual_width}x{self.actual_height} is below "
                f"the preferred minimum {prefs.min_width}x{prefs.min_height}"
            )

        logger.info(f"Camera initialized: {self.actual_width}x{self.actual_height}")
        return True

    def _configure_camera(self):
        cfg = self.config
        prefs = self.preferences

        fourcc = cv2.VideoWriter_fourcc(*cfg['codec'])
        self.camera.set(cv2.CAP_PROP_FOURCC, fourcc)

        # Driver picks the nearest supported mode
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, prefs.ideal_width)
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, prefs.ideal_height)
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

        logger.debug(f"Camera configured: requested {prefs.ideal_width}x{prefs.ideal_height} @ {cfg['fps']}fps")

    @property
    def facing_mode(self) -> str:
        return self.preferences.facing_mode

    @property
    def width(self) -> int:
        return self.actual_width

    @property
    def height(self) -> int:
        return self.actual_height

    def get_capabilities(self) -> Mapping[str, Any]:
        caps: Dict[str, Any] = {}
        if not self.is_opened():
            return caps

        if self.zoom_range is not None:
            caps['zoom'] = {'min': self.zoom_range[0], 'max': self.zoom_range[1], 'step': 1.0}

        # -1 means the backend does not expose the property
        if self.camera.get(cv2.CAP_PROP_AUTOFOCUS) != -1:
            caps['focus_mode'] = [FOCUS_CONTINUOUS, FOCUS_MANUAL]

        return caps

    async def apply_constraints(self, constraints: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._apply_constraints, dict(constraints))

    def _apply_constraints(self, constraints: Dict[str, Any]):
        if not self.is_opened():
            raise DeviceAccessError(f"/dev/video{self.camera_index}", reason="Camera not open")

        for key, value in constraints.items():
            if key == 'zoom':
                accepted = self.camera.set(cv2.CAP_PROP_ZOOM, float(value))
            elif key == 'focus_mode':
                if value in (FOCUS_CONTINUOUS, FOCUS_CONTINUOUS_PICTURE):
                    accepted = self.camera.set(cv2.CAP_PROP_AUTOFOCUS, 1)
                elif value == FOCUS_MANUAL:
                    accepted = self.camera.set(cv2.CAP_PROP_AUTOFOCUS, 0)
                else:
                    raise CapabilityUnsupportedError('focus_mode', reason=f"mode {value!r}")
            else:
                raise CapabilityUnsupportedError(key, reason="not exposed by V4L2 backend")

            if not accepted:
                raise CapabilityUnsupportedError(key, reason=f"device rejected {value!r}")

    def read_frame(self) -> Optional[np.ndarray]:
        if not self.is_opened():
            return None

        ret, frame = self.camera.read()
        if not ret or frame is None:
            logger.warning("Failed to read frame from camera")
            return None

        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)

    def is_opened(self) -> bool:
        return self.camera is not None and self.camera.isOpened()

    def stop(self):
        """Release camera resources."""
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        self.actual_width = 0
        self.actual_height = 0
        logger.info("Camera released")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
