"""
Layer 1 — Capture Session
Owns the active stream (track + frame source) and its negotiated
configuration. Lifecycle: UNINITIALIZED -> ACTIVE -> DISPOSED.
"""
import enum
import logging
from typing import Awaitable, Callable, List, Optional

from error_handlers import SessionStateError
from .capabilities import CapabilityNegotiator, CaptureConfig, DeviceCapabilities
from .device import CameraTrack, FrameSource, StreamPreferences

logger = logging.getLogger(__name__)

TeardownHook = Callable[[], Awaitable[None]]


class SessionState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    ACTIVE = 'active'
    DISPOSED = 'disposed'


class CaptureSession:
    """
    Explicitly owned "current stream" for the capture core.

    Capabilities are negotiated once on start and again on every replace.
    Teardown hooks (registered by the orchestrator) run before the stream
    is released so in-flight torch state can be reverted.
    """

    def __init__(
        self,
        negotiator: Optional[CapabilityNegotiator] = None,
        preferences: Optional[StreamPreferences] = None
    ):
        self.negotiator = negotiator or CapabilityNegotiator()
        self.preferences = preferences or StreamPreferences()
        self._state = SessionState.UNINITIALIZED
        self._track: Optional[CameraTrack] = None
        self._source: Optional[FrameSource] = None
        self._capabilities: Optional[DeviceCapabilities] = None
        self._config: Optional[CaptureConfig] = None
        self._teardown_hooks: List[TeardownHook] = []
        self.generation = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    def _require_active(self, operation: str):
        if self._state is not SessionState.ACTIVE:
            raise SessionStateError(self._state.value, operation)

    @property
    def track(self) -> CameraTrack:
        self._require_active('access track')
        return self._track

    @property
    def source(self) -> FrameSource:
        self._require_active('access frame source')
        return self._source

    @property
    def capabilities(self) -> DeviceCapabilities:
        self._require_active('read capabilities')
        return self._capabilities

    @property
    def config(self) -> CaptureConfig:
        self._require_active('read capture config')
        return self._config

    def add_teardown_hook(self, hook: TeardownHook):
        self._teardown_hooks.append(hook)

    def _activate(self, track, source, capabilities, config):
        self._track = track
        self._source = source if source is not None else track
        self._capabilities = capabilities
        self._config = config
        self.generation += 1
        self._state = SessionState.ACTIVE

    async def start(self, track: CameraTrack, source: Optional[FrameSource] = None):
        """
        Activate the session on a freshly opened stream.

        Args:
            track: Capability/constraint surface of the stream
            source: Frame source (defaults to the track itself)
        """
        if self._state is not SessionState.UNINITIALIZED:
            raise SessionStateError(self._state.value, 'start')

        logger.info("Starting capture session")
        capabilities, config = await self.negotiator.negotiate(track)
        self._activate(track, source, capabilities, config)
        logger.info(f"Capture session active (generation {self.generation})")

    async def replace(self, track: CameraTrack, source: Optional[FrameSource] = None):
        """
        Swap in a new stream, e.g. after a camera switch.

        The new track is negotiated before the current one is torn down,
        so a failure leaves the session on its existing stream.
        """
        self._require_active('replace stream')

        logger.info("Replacing capture stream")
        capabilities, config = await self.negotiator.negotiate(track)
        await self._run_teardown()
        self._stop_track()
        self._activate(track, source, capabilities, config)
        logger.info(f"Capture session replaced (generation {self.generation})")

    async def dispose(self):
        """Release the stream. Safe to call more than once."""
        if self._state is SessionState.DISPOSED:
            return

        logger.info("Disposing capture session")
        if self._state is SessionState.ACTIVE:
            await self._run_teardown()
            self._stop_track()

        self._track = None
        self._source = None
        self._capabilities = None
        self._config = None
        self._state = SessionState.DISPOSED

    async def set_zoom(self, level: float) -> CaptureConfig:
        self._require_active('set zoom')
        self._config = await self.negotiator.set_zoom(
            self._track, self._capabilities, self._config, level
        )
        return self._config

    async def set_torch(self, on: bool) -> bool:
        self._require_active('toggle torch')
        return await self.negotiator.set_torch(self._track, self._capabilities, on)

    async def _run_teardown(self):
        for hook in list(self._teardown_hooks):
            try:
                await hook()
            except Exception as e:
                logger.warning(f"Teardown hook failed: {e}")

    def _stop_track(self):
        if self._track is None:
            return
        try:
            self._track.stop()
        except Exception as e:
            logger.warning(f"Failed to stop camera track: {e}")

    def to_dict(self):
        result = {'state': self._state.value, 'generation': self.generation}
        if self.is_active:
            result['capabilities'] = self._capabilities.to_dict()
            result['config'] = self._config.to_dict()
        return result
