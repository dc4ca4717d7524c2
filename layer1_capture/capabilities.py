"""
Layer 1 — Capability Negotiator

Turns whatever a camera track declares into a typed capability snapshot,
then applies a best-effort configuration (zoom, focus hint). Devices vary
widely: every capability is optional and every constraint may be rejected.
A rejection is logged and ignored; it never aborts the session.
"""
import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Any, FrozenSet, Mapping, Optional, Tuple

from error_handlers import CapabilityUnsupportedError
from .device import CameraTrack, FACING_ENVIRONMENT

logger = logging.getLogger(__name__)

FOCUS_CONTINUOUS_PICTURE = 'continuous-picture'
FOCUS_CONTINUOUS = 'continuous'
FOCUS_MACRO = 'macro'


class FocusStrategy(enum.Enum):
    """How a refocus request is carried out on this device."""
    NONE = 'none'
    CONTINUOUS = 'continuous'
    MACRO_TOGGLE = 'macro_toggle'
    ZOOM_WIGGLE = 'zoom_wiggle'


@dataclass(frozen=True)
class ZoomRange:
    min: float
    max: float
    step: Optional[float] = None

    def clamp(self, value: float) -> float:
        return max(self.min, min(self.max, value))


@dataclass(frozen=True)
class DeviceCapabilities:
    """Typed snapshot of what the active track supports."""
    torch: bool = False
    zoom: Optional[ZoomRange] = None
    focus_modes: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> 'DeviceCapabilities':
        """
        Parse a raw capability mapping. Missing or malformed entries are
        treated as unsupported.
        """
        if not raw:
            return cls()

        torch = raw.get('torch') is True

        zoom = None
        zoom_raw = raw.get('zoom')
        if isinstance(zoom_raw, Mapping):
            try:
                zmin = float(zoom_raw['min'])
                zmax = float(zoom_raw['max'])
                step = zoom_raw.get('step')
                step = float(step) if step is not None else None
                if zmin <= zmax:
                    zoom = ZoomRange(min=zmin, max=zmax, step=step)
                else:
                    logger.warning(f"Ignoring inverted zoom range {zmin}-{zmax}")
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed zoom capability {zoom_raw!r}: {e}")

        modes = raw.get('focus_mode') or ()
        if isinstance(modes, str):
            modes = (modes,)
        try:
            focus_modes = frozenset(str(m) for m in modes)
        except TypeError:
            focus_modes = frozenset()

        return cls(torch=torch, zoom=zoom, focus_modes=focus_modes)

    @property
    def continuous_focus_mode(self) -> Optional[str]:
        if FOCUS_CONTINUOUS_PICTURE in self.focus_modes:
            return FOCUS_CONTINUOUS_PICTURE
        if FOCUS_CONTINUOUS in self.focus_modes:
            return FOCUS_CONTINUOUS
        return None

    def to_dict(self):
        return {
            'torch': self.torch,
            'zoom': (
                {'min': self.zoom.min, 'max': self.zoom.max, 'step': self.zoom.step}
                if self.zoom else None
            ),
            'focus_modes': sorted(self.focus_modes),
        }


@dataclass(frozen=True)
class CaptureConfig:
    """Negotiated best-effort settings for one active stream."""
    zoom: Optional[float] = None
    illumination_available: bool = False
    focus_strategy: FocusStrategy = FocusStrategy.NONE
    facing_mode: str = FACING_ENVIRONMENT

    def to_dict(self):
        return {
            'zoom': self.zoom,
            'illumination_available': self.illumination_available,
            'focus_strategy': self.focus_strategy.value,
            'facing_mode': self.facing_mode,
        }


@dataclass
class NegotiationPolicy:
    """Defaults used when negotiating a new stream."""
    default_zoom: float = 1.0
    apply_focus_hint: bool = True


async def try_apply(track: CameraTrack, constraints: Mapping[str, Any], feature: str) -> bool:
    """
    Apply constraints, degrading a device rejection to a logged warning.

    Returns:
        bool: True if the device accepted the constraints
    """
    try:
        await track.apply_constraints(dict(constraints))
        return True
    except CapabilityUnsupportedError as e:
        logger.warning(f"{e.error_code}: {e.message} ({e.details.get('reason')})")
        return False
    except Exception as e:
        error = CapabilityUnsupportedError(feature, reason=e)
        logger.warning(f"{error.error_code}: {error.message} ({e})")
        return False


class CapabilityNegotiator:
    """
    Inspects a camera track once per stream and produces the capability
    snapshot and negotiated configuration.
    """

    def __init__(self, policy: Optional[NegotiationPolicy] = None):
        self.policy = policy or NegotiationPolicy()

    def query(self, track: CameraTrack) -> DeviceCapabilities:
        try:
            raw = track.get_capabilities()
        except Exception as e:
            logger.warning(f"Capability query failed, assuming none: {e}")
            raw = None

        capabilities = DeviceCapabilities.from_raw(raw)
        logger.info(f"Camera capabilities: {capabilities.to_dict()}")
        return capabilities

    async def negotiate(self, track: CameraTrack) -> Tuple[DeviceCapabilities, CaptureConfig]:
        """
        Query capabilities and apply default zoom and focus hint.

        Returns:
            tuple: (DeviceCapabilities, CaptureConfig)
        """
        capabilities = self.query(track)

        zoom = None
        if capabilities.zoom is not None:
            target = capabilities.zoom.clamp(self.policy.default_zoom)
            if await try_apply(track, {'zoom': target}, 'zoom'):
                zoom = target
                logger.debug(f"Zoom set to {target}")
            else:
                logger.info("Zoom left at device default")

        continuous = capabilities.continuous_focus_mode
        if continuous and self.policy.apply_focus_hint:
            # Hint only. Capture timing does not depend on it being honored.
            await try_apply(track, {'focus_mode': continuous}, 'focus_mode')

        if FOCUS_MACRO in capabilities.focus_modes:
            strategy = FocusStrategy.MACRO_TOGGLE
        elif zoom is not None:
            strategy = FocusStrategy.ZOOM_WIGGLE
        elif continuous:
            strategy = FocusStrategy.CONTINUOUS
        else:
            strategy = FocusStrategy.NONE

        config = CaptureConfig(
            zoom=zoom,
            illumination_available=capabilities.torch,
            focus_strategy=strategy,
            facing_mode=track.facing_mode,
        )
        logger.info(f"Negotiated capture config: {config.to_dict()}")
        return capabilities, config

    async def set_zoom(
        self,
        track: CameraTrack,
        capabilities: DeviceCapabilities,
        config: CaptureConfig,
        level: float
    ) -> CaptureConfig:
        """
        Apply a caller-requested zoom level, clamped to the device range.

        Returns:
            CaptureConfig: Updated config (unchanged when zoom is unsupported
            or rejected)
        """
        if capabilities.zoom is None:
            logger.warning(CapabilityUnsupportedError('zoom').message)
            return config

        target = capabilities.zoom.clamp(float(level))
        if await try_apply(track, {'zoom': target}, 'zoom'):
            return replace(config, zoom=target)
        return config

    async def set_torch(self, track: CameraTrack, capabilities: DeviceCapabilities, on: bool) -> bool:
        """Toggle the torch. Returns True if the device accepted the change."""
        if not capabilities.torch:
            logger.debug("Torch toggle skipped: not supported by device")
            return False
        return await try_apply(track, {'torch': bool(on)}, 'torch')
