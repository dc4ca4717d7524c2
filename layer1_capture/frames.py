"""
Layer 1 — Frame Containers
Pixel buffers that flow out of the capture layer.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class FrameSample:
    """Read-only centre window of a live frame, used only for brightness."""
    pixels: np.ndarray
    origin: Tuple[int, int]  # (x, y) of the window in the source frame

    def __post_init__(self):
        self.pixels.setflags(write=False)

    @property
    def size(self) -> Tuple[int, int]:
        return (self.pixels.shape[1], self.pixels.shape[0])


@dataclass
class RawFrame:
    """
    Full-resolution RGBA buffer captured at the moment of exposure.

    Each capture owns a freshly allocated buffer; it is never a view of the
    frame source's memory.
    """
    pixels: np.ndarray
    brightness: Optional[float] = None
    low_light: bool = False
    mirrored: bool = False
    illumination_cycle: Tuple[str, ...] = ("off",)
    captured_at: str = field(
        default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    )

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_dict(self) -> Dict:
        """Metadata only, for API responses."""
        return {
            'width': self.width,
            'height': self.height,
            'brightness': round(self.brightness, 2) if self.brightness is not None else None,
            'low_light': self.low_light,
            'mirrored': self.mirrored,
            'illumination_cycle': list(self.illumination_cycle),
            'captured_at': self.captured_at,
        }


def to_rgba(pixels: np.ndarray) -> np.ndarray:
    """
    Normalize an 8-bit image array to H x W x 4 RGBA.

    Accepts grayscale (H x W), RGB and RGBA arrays. Always returns a new
    contiguous buffer.
    """
    if pixels.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixels, got {pixels.dtype}")

    if pixels.ndim == 2:
        rgb = np.repeat(pixels[:, :, None], 3, axis=2)
    elif pixels.ndim == 3 and pixels.shape[2] == 4:
        return np.array(pixels, dtype=np.uint8, copy=True, order='C')
    elif pixels.ndim == 3 and pixels.shape[2] == 3:
        rgb = pixels
    elif pixels.ndim == 3 and pixels.shape[2] == 1:
        rgb = np.repeat(pixels, 3, axis=2)
    else:
        raise ValueError(f"Unsupported pixel array shape {pixels.shape}")

    alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
    return np.ascontiguousarray(np.concatenate([rgb, alpha], axis=2))
