"""
Layer 1 — Device Interfaces

Abstract surfaces the capture core talks to. A concrete camera backend
implements both: CameraTrack for capabilities and constraints, FrameSource
for pixel access. Every call may be rejected by real hardware.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import numpy as np

FACING_USER = 'user'
FACING_ENVIRONMENT = 'environment'


@dataclass
class StreamPreferences:
    """Resolution and orientation requested when a stream starts."""
    facing_mode: str = FACING_ENVIRONMENT
    aspect_ratio: float = 4 / 3
    ideal_width: int = 4032
    ideal_height: int = 3024
    min_width: int = 1920
    min_height: int = 1440

    def to_constraints(self) -> Dict[str, Any]:
        return {
            'facing_mode': self.facing_mode,
            'aspect_ratio': {'ideal': self.aspect_ratio},
            'width': {'ideal': self.ideal_width, 'min': self.min_width},
            'height': {'ideal': self.ideal_height, 'min': self.min_height},
        }


class CameraTrack(ABC):
    """
    Capability and constraint surface of an active video track.
    """

    @property
    @abstractmethod
    def facing_mode(self) -> str:
        """'user' for a self-facing camera, 'environment' otherwise."""
        ...

    @abstractmethod
    def get_capabilities(self) -> Mapping[str, Any]:
        """
        Raw declared capabilities.

        Recognized keys: 'torch' (bool), 'zoom' ({'min', 'max', 'step'}),
        'focus_mode' (sequence of mode names). Any key may be missing.
        """
        ...

    @abstractmethod
    async def apply_constraints(self, constraints: Mapping[str, Any]) -> None:
        """
        Apply constraints such as {'zoom': 1.0}, {'torch': True} or
        {'focus_mode': 'continuous'}.

        Raises:
            Exception: Whatever the device raises when it rejects the request
        """
        ...

    def stop(self) -> None:
        """Stop the track. Default is a no-op."""
        return None


class FrameSource(ABC):
    """Live frame access with intrinsic resolution."""

    @property
    @abstractmethod
    def width(self) -> int:
        ...

    @property
    @abstractmethod
    def height(self) -> int:
        ...

    @abstractmethod
    def read_frame(self) -> Optional[np.ndarray]:
        """
        Current frame as H x W x 4 RGBA uint8, or None when no frame is
        available yet.
        """
        ...

    def has_valid_dimensions(self) -> bool:
        try:
            return self.width > 0 and self.height > 0
        except (TypeError, ValueError):
            return False
