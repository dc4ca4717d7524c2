"""
Layer 1 — Capture Orchestrator

Sequences one "take a photo" operation:

1. sample brightness; in low light with a torch, turn it on and let it settle
2. wait for autofocus to converge
3. fire the shutter hook and grab the frame at native resolution
4. mirror the buffer for a self-facing camera
5. turn the torch back off (always, even if the grab fails)

Stages are strictly sequential. Settle waits suspend only the calling task.
Only one capture may be in flight; callers enforce that.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

import numpy as np

from error_handlers import CaptureError, FrameUnavailableError, SessionStateError
from .capabilities import FOCUS_CONTINUOUS_PICTURE, FOCUS_MACRO, FocusStrategy, try_apply
from .device import FACING_USER, FrameSource
from .frames import RawFrame, to_rgba
from .luminance import LuminanceSampler
from .session import CaptureSession

logger = logging.getLogger(__name__)


@dataclass
class TimingPolicy:
    """Settle delays in seconds. Coarse stand-ins for hardware-ready signals."""
    torch_settle: float = 0.3
    focus_settle: float = 0.3
    macro_refocus: float = 0.2
    zoom_wiggle: float = 0.1
    zoom_wiggle_step: float = 0.1
    teardown_timeout: float = 1.0


class CaptureOrchestrator:
    """
    Drives a CaptureSession through the capture sequence.

    The orchestrator registers its teardown with the session, so replacing
    or disposing the stream cancels any in-flight capture and reverts the
    torch first.
    """

    def __init__(
        self,
        session: CaptureSession,
        sampler: Optional[LuminanceSampler] = None,
        timing: Optional[TimingPolicy] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        on_shutter: Optional[Callable[[], None]] = None
    ):
        """
        Args:
            session: Active (or soon to be active) capture session
            sampler: Luminance sampler (default 50x50 window, threshold 80)
            timing: Settle delays
            sleep: Awaitable sleep function, asyncio.sleep by default
            on_shutter: Called right before the frame grab
        """
        self.session = session
        self.sampler = sampler or LuminanceSampler()
        self.timing = timing or TimingPolicy()
        self._sleep = sleep or asyncio.sleep
        self.on_shutter = on_shutter

        self._task: Optional[asyncio.Task] = None
        self._torch_on = False
        self._torch_target = None  # (track, capabilities) the torch was enabled on

        session.add_teardown_hook(self.teardown)

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def capture(self) -> RawFrame:
        """
        Run the full capture sequence.

        Returns:
            RawFrame: Newly allocated RGBA buffer with capture metadata

        Raises:
            SessionStateError: Session is not active
            FrameUnavailableError: No usable frame at grab time
        """
        if not self.session.is_active:
            raise SessionStateError(self.session.state.value, 'capture')

        track = self.session.track
        source = self.session.source
        capabilities = self.session.capabilities
        config = self.session.config

        self._task = asyncio.current_task()
        cycle = ['off']
        torch_requested = False

        try:
            brightness = await asyncio.to_thread(self.sampler.sample_brightness, source)
            low_light = self.sampler.is_low_light(brightness)
            if brightness is None:
                logger.info("Brightness unknown, assuming adequate light")
            else:
                logger.info(f"Brightness {brightness:.1f} (low light: {low_light})")

            if low_light and capabilities.torch:
                torch_requested = True
                self._torch_target = (track, capabilities)
                if await self._set_torch(track, capabilities, True):
                    cycle.append('on')
                    await self._sleep(self.timing.torch_settle)
            elif low_light:
                logger.info("Low light detected but torch not supported")

            await self._sleep(self.timing.focus_settle)

            self._fire_shutter()
            pixels = await self._grab(source)

            mirrored = config.facing_mode == FACING_USER
            if mirrored:
                pixels = np.ascontiguousarray(pixels[:, ::-1])

        finally:
            if torch_requested:
                restored = await self._set_torch(track, capabilities, False)
                if 'on' in cycle:
                    if restored:
                        cycle.append('off')
                    else:
                        logger.error("Torch could not be turned off after capture")
                self._torch_target = None
            if self._task is asyncio.current_task():
                self._task = None

        frame = RawFrame(
            pixels=pixels,
            brightness=brightness,
            low_light=low_light,
            mirrored=mirrored,
            illumination_cycle=tuple(cycle),
        )
        logger.info(f"Frame captured - {frame.width}x{frame.height}, torch cycle {cycle}")
        return frame

    async def capture_and_process(self, processor, options=None) -> Tuple[RawFrame, Any]:
        """
        Capture a frame and hand it to the pixel post-processor.

        Returns:
            tuple: (RawFrame, ProcessedImage)
        """
        raw = await self.capture()
        processed = await asyncio.to_thread(processor.process, raw, options)
        return raw, processed

    async def refocus(self) -> bool:
        """
        Nudge autofocus to re-evaluate, using the negotiated strategy.

        Returns:
            bool: True if a focus hint was issued
        """
        track = self.session.track
        capabilities = self.session.capabilities
        config = self.session.config
        strategy = config.focus_strategy
        logger.info(f"Refocus requested (strategy: {strategy.value})")

        if strategy is FocusStrategy.MACRO_TOGGLE:
            if not await try_apply(track, {'focus_mode': FOCUS_MACRO}, 'focus_mode'):
                return False
            await self._sleep(self.timing.macro_refocus)
            restore = capabilities.continuous_focus_mode or FOCUS_CONTINUOUS_PICTURE
            await try_apply(track, {'focus_mode': restore}, 'focus_mode')
            return True

        if strategy is FocusStrategy.ZOOM_WIGGLE:
            current = config.zoom
            wiggle = capabilities.zoom.clamp(current + self.timing.zoom_wiggle_step)
            if not await try_apply(track, {'zoom': wiggle}, 'zoom'):
                return False
            await self._sleep(self.timing.zoom_wiggle)
            await try_apply(track, {'zoom': current}, 'zoom')
            return True

        if strategy is FocusStrategy.CONTINUOUS:
            return await try_apply(
                track, {'focus_mode': capabilities.continuous_focus_mode}, 'focus_mode'
            )

        logger.debug("Device offers no focus hint")
        return False

    async def teardown(self):
        """
        Abandon any in-flight capture and force the torch off.

        Registered as a session teardown hook; also safe to call directly.
        """
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            logger.info("Cancelling in-flight capture")
            task.cancel()
            await asyncio.wait({task}, timeout=self.timing.teardown_timeout)

        if self._torch_on and self._torch_target is not None:
            track, capabilities = self._torch_target
            logger.info("Forcing torch off during teardown")
            await self._set_torch(track, capabilities, False)
            self._torch_target = None

    async def _set_torch(self, track, capabilities, on: bool) -> bool:
        accepted = await self.session.negotiator.set_torch(track, capabilities, on)
        if accepted:
            self._torch_on = on
            logger.debug(f"Torch {'on' if on else 'off'}")
        return accepted

    def _fire_shutter(self):
        if self.on_shutter is None:
            return
        try:
            self.on_shutter()
        except Exception as e:
            logger.warning(f"Shutter hook failed: {e}")

    async def _grab(self, source: FrameSource) -> np.ndarray:
        if source is None or not source.has_valid_dimensions():
            raise FrameUnavailableError("Frame source has no valid dimensions")

        try:
            frame = await asyncio.to_thread(source.read_frame)
        except CaptureError:
            raise
        except Exception as e:
            raise FrameUnavailableError(f"Frame read failed: {e}") from e

        if frame is None or frame.size == 0:
            raise FrameUnavailableError("Frame source returned no frame")

        try:
            return to_rgba(frame)
        except ValueError as e:
            raise FrameUnavailableError(str(e)) from e
