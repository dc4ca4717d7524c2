"""
Layer 1 — Luminance Sampler
Estimates ambient brightness from the centre of the live frame to decide
whether the torch should be engaged before capture.
"""
import logging
from typing import Optional

import numpy as np

from .device import FrameSource
from .frames import FrameSample

logger = logging.getLogger(__name__)

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = (0.299, 0.587, 0.114)


def luminance(pixels: np.ndarray) -> np.ndarray:
    """Per-pixel luminance of an RGB(A) array, as float64."""
    r = pixels[..., 0].astype(np.float64)
    g = pixels[..., 1].astype(np.float64)
    b = pixels[..., 2].astype(np.float64)
    return LUMA_WEIGHTS[0] * r + LUMA_WEIGHTS[1] * g + LUMA_WEIGHTS[2] * b


class LuminanceSampler:
    """
    Mean luminance over an N x N window at the frame centre.

    A reading of None means "unknown" (source not ready). Callers treat
    unknown as adequate light.
    """

    SAMPLE_SIZE = 50
    LOW_LIGHT_THRESHOLD = 80.0

    def __init__(self, sample_size: Optional[int] = None, threshold: Optional[float] = None):
        """
        Args:
            sample_size: Window edge length in pixels
            threshold: Mean luminance below which a scene is low-light
        """
        self.sample_size = sample_size or self.SAMPLE_SIZE
        self.threshold = self.LOW_LIGHT_THRESHOLD if threshold is None else threshold
        if self.sample_size <= 0:
            raise ValueError("sample_size must be positive")

    def extract_sample(self, source: FrameSource) -> Optional[FrameSample]:
        """Copy the centre window out of the current frame."""
        if not source.has_valid_dimensions():
            logger.debug("Frame source has no valid dimensions yet")
            return None

        try:
            frame = source.read_frame()
        except Exception as e:
            logger.warning(f"Frame read for brightness sampling failed: {e}")
            return None

        if frame is None or frame.ndim != 3 or frame.size == 0:
            logger.debug("Frame source returned no frame for sampling")
            return None

        height, width = frame.shape[:2]
        size_w = min(self.sample_size, width)
        size_h = min(self.sample_size, height)
        x = (width - size_w) // 2
        y = (height - size_h) // 2

        window = np.array(frame[y:y + size_h, x:x + size_w], copy=True)
        return FrameSample(pixels=window, origin=(x, y))

    def measure(self, pixels: np.ndarray) -> float:
        """Arithmetic mean luminance of an RGB(A) array."""
        return float(np.mean(luminance(pixels)))

    def sample_brightness(self, source: FrameSource) -> Optional[float]:
        """
        Sample brightness from a live frame source.

        Returns:
            float in [0, 255], or None when the source is not ready
        """
        sample = self.extract_sample(source)
        if sample is None:
            return None

        brightness = self.measure(sample.pixels)
        logger.debug(f"Sampled brightness {brightness:.1f} over {sample.size[0]}x{sample.size[1]} window")
        return brightness

    def is_low_light(self, brightness: Optional[float]) -> bool:
        if brightness is None:
            return False
        return brightness < self.threshold
