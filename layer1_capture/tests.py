"""
Tests for Layer 1 capture: luminance sampling, capability negotiation,
session lifecycle and the capture sequence.
"""
import asyncio

import numpy as np
import pytest

from error_handlers import FrameUnavailableError, SessionStateError
from layer1_capture import (
    CapabilityNegotiator,
    CaptureOrchestrator,
    CaptureSession,
    DeviceCapabilities,
    FocusStrategy,
    LuminanceSampler,
    SessionState,
    TimingPolicy,
    FACING_USER,
)


def solid(value, width=64, height=48):
    frame = np.full((height, width, 4), value, dtype=np.uint8)
    frame[..., 3] = 255
    return frame


def start_session(camera, negotiator=None):
    session = CaptureSession(negotiator=negotiator)
    asyncio.run(session.start(camera))
    return session


class TestLuminanceSampler:
    """Test brightness sampling and low-light classification."""

    def test_black_frame_is_low_light(self, make_camera):
        sampler = LuminanceSampler()
        brightness = sampler.sample_brightness(make_camera(frame=solid(0)))
        assert brightness == 0.0
        assert sampler.is_low_light(brightness) is True

    def test_white_frame_is_well_lit(self, make_camera):
        sampler = LuminanceSampler()
        brightness = sampler.sample_brightness(make_camera(frame=solid(255)))
        assert brightness == pytest.approx(255.0)
        assert sampler.is_low_light(brightness) is False

    def test_uses_weighted_luminance(self, make_camera):
        frame = solid(0)
        frame[..., 0] = 255  # pure red
        brightness = LuminanceSampler().sample_brightness(make_camera(frame=frame))
        assert brightness == pytest.approx(0.299 * 255)

    def test_threshold_boundary(self):
        sampler = LuminanceSampler()
        assert sampler.is_low_light(79.9) is True
        assert sampler.is_low_light(80.0) is False

    def test_unknown_when_source_not_ready(self, make_camera):
        sampler = LuminanceSampler()
        brightness = sampler.sample_brightness(make_camera(frame=None))
        assert brightness is None
        assert sampler.is_low_light(brightness) is False

    def test_unknown_when_read_fails(self, make_camera):
        camera = make_camera(frame=solid(0))
        camera.read_error = RuntimeError("stream ended")
        assert LuminanceSampler().sample_brightness(camera) is None

    def test_samples_only_the_centre_window(self, make_camera):
        frame = solid(255, width=200, height=200)
        frame[75:125, 75:125, :3] = 0
        assert LuminanceSampler().sample_brightness(make_camera(frame=frame)) == 0.0

        frame = solid(0, width=200, height=200)
        frame[75:125, 75:125, :3] = 255
        assert LuminanceSampler().sample_brightness(make_camera(frame=frame)) == pytest.approx(255.0)

    def test_small_frame_uses_whole_frame(self, make_camera):
        sample = LuminanceSampler().extract_sample(make_camera(frame=solid(90, width=20, height=10)))
        assert sample.size == (20, 10)
        assert sample.origin == (0, 0)

    def test_sample_is_read_only_copy(self, make_camera):
        frame = solid(10, width=100, height=100)
        sample = LuminanceSampler().extract_sample(make_camera(frame=frame))
        assert sample.size == (50, 50)
        assert sample.origin == (25, 25)
        assert not sample.pixels.flags.writeable
        assert not np.shares_memory(sample.pixels, frame)


class TestDeviceCapabilities:
    """Test parsing of raw capability declarations."""

    def test_empty_capabilities(self):
        caps = DeviceCapabilities.from_raw({})
        assert caps.torch is False
        assert caps.zoom is None
        assert caps.focus_modes == frozenset()

    def test_torch_requires_explicit_true(self):
        assert DeviceCapabilities.from_raw({'torch': True}).torch is True
        assert DeviceCapabilities.from_raw({'torch': 'yes'}).torch is False
        assert DeviceCapabilities.from_raw({'torch': 1}).torch is False

    def test_zoom_range_parsed(self):
        caps = DeviceCapabilities.from_raw({'zoom': {'min': 1, 'max': 8, 'step': 0.5}})
        assert caps.zoom.min == 1.0
        assert caps.zoom.max == 8.0
        assert caps.zoom.step == 0.5

    def test_malformed_zoom_ignored(self):
        assert DeviceCapabilities.from_raw({'zoom': {'min': 1}}).zoom is None
        assert DeviceCapabilities.from_raw({'zoom': {'min': 'a', 'max': 2}}).zoom is None
        assert DeviceCapabilities.from_raw({'zoom': {'min': 5, 'max': 2}}).zoom is None
        assert DeviceCapabilities.from_raw({'zoom': 3}).zoom is None

    def test_continuous_picture_preferred(self):
        caps = DeviceCapabilities.from_raw({'focus_mode': ['continuous', 'continuous-picture']})
        assert caps.continuous_focus_mode == 'continuous-picture'
        caps = DeviceCapabilities.from_raw({'focus_mode': 'continuous'})
        assert caps.continuous_focus_mode == 'continuous'


class TestCapabilityNegotiator:
    """Test best-effort configuration of a track."""

    def test_no_capabilities_never_fails(self, make_camera):
        camera = make_camera(frame=solid(100))
        caps, config = asyncio.run(CapabilityNegotiator().negotiate(camera))
        assert caps == DeviceCapabilities()
        assert config.zoom is None
        assert config.illumination_available is False
        assert config.focus_strategy is FocusStrategy.NONE
        assert camera.applied == []

    def test_capability_query_error_treated_as_none(self, make_camera):
        camera = make_camera(frame=solid(100))

        def broken():
            raise RuntimeError("getCapabilities not implemented")
        camera.get_capabilities = broken

        caps, config = asyncio.run(CapabilityNegotiator().negotiate(camera))
        assert caps == DeviceCapabilities()

    def test_default_zoom_clamped_to_range(self, make_camera):
        camera = make_camera(capabilities={'zoom': {'min': 2.0, 'max': 5.0}})
        _, config = asyncio.run(CapabilityNegotiator().negotiate(camera))
        assert config.zoom == 2.0
        assert camera.applied == [{'zoom': 2.0}]

    def test_zoom_rejection_is_not_fatal(self, make_camera):
        camera = make_camera(capabilities={'zoom': {'min': 1.0, 'max': 5.0}}, reject={'zoom'})
        _, config = asyncio.run(CapabilityNegotiator().negotiate(camera))
        assert config.zoom is None
        assert camera.rejected == [{'zoom': 1.0}]

    def test_focus_hint_emitted(self, make_camera):
        camera = make_camera(capabilities={'focus_mode': ['manual', 'continuous-picture']})
        _, config = asyncio.run(CapabilityNegotiator().negotiate(camera))
        assert {'focus_mode': 'continuous-picture'} in camera.applied
        assert config.focus_strategy is FocusStrategy.CONTINUOUS

    def test_focus_hint_rejection_is_not_fatal(self, make_camera):
        camera = make_camera(capabilities={'focus_mode': ['continuous']}, reject={'focus_mode'})
        _, config = asyncio.run(CapabilityNegotiator().negotiate(camera))
        assert config.focus_strategy is FocusStrategy.CONTINUOUS

    def test_focus_strategy_selection(self, make_camera):
        negotiator = CapabilityNegotiator()

        _, config = asyncio.run(negotiator.negotiate(
            make_camera(capabilities={'focus_mode': ['macro', 'continuous'], 'zoom': {'min': 1, 'max': 2}})
        ))
        assert config.focus_strategy is FocusStrategy.MACRO_TOGGLE

        _, config = asyncio.run(negotiator.negotiate(
            make_camera(capabilities={'zoom': {'min': 1, 'max': 2}})
        ))
        assert config.focus_strategy is FocusStrategy.ZOOM_WIGGLE

    def test_torch_gated_on_capability(self, make_camera):
        camera = make_camera()
        negotiator = CapabilityNegotiator()
        caps, config = asyncio.run(negotiator.negotiate(camera))
        assert asyncio.run(negotiator.set_torch(camera, caps, True)) is False
        assert camera.applied == []

    def test_set_zoom_clamps_to_max(self, make_camera, full_capabilities):
        camera = make_camera(capabilities=full_capabilities)
        negotiator = CapabilityNegotiator()
        caps, config = asyncio.run(negotiator.negotiate(camera))
        config = asyncio.run(negotiator.set_zoom(camera, caps, config, 10))
        assert config.zoom == 4.0
        assert camera.applied[-1] == {'zoom': 4.0}

    def test_set_zoom_without_zoom_support(self, make_camera):
        camera = make_camera()
        negotiator = CapabilityNegotiator()
        caps, config = asyncio.run(negotiator.negotiate(camera))
        assert asyncio.run(negotiator.set_zoom(camera, caps, config, 2.0)) == config


class TestCaptureSession:
    """Test the session lifecycle state machine."""

    def test_starts_uninitialized(self):
        session = CaptureSession()
        assert session.state is SessionState.UNINITIALIZED
        with pytest.raises(SessionStateError):
            session.config

    def test_start_activates(self, make_camera, full_capabilities):
        session = start_session(make_camera(capabilities=full_capabilities))
        assert session.state is SessionState.ACTIVE
        assert session.capabilities.torch is True
        assert session.config.zoom == 1.0
        assert session.generation == 1

    def test_start_twice_rejected(self, make_camera):
        session = start_session(make_camera())
        with pytest.raises(SessionStateError):
            asyncio.run(session.start(make_camera()))

    def test_replace_renegotiates(self, make_camera, full_capabilities):
        first = make_camera(capabilities=full_capabilities)
        session = start_session(first)

        second = make_camera(capabilities={}, facing_mode=FACING_USER)
        asyncio.run(session.replace(second))

        assert first.stopped is True
        assert session.track is second
        assert session.capabilities.torch is False
        assert session.config.facing_mode == FACING_USER
        assert session.generation == 2

    def test_replace_negotiates_before_releasing_current(self, make_camera, full_capabilities, events):
        first = make_camera(capabilities=full_capabilities)
        session = start_session(first)
        first.stop = lambda: events.append(('stop', 'first'))

        second = make_camera(capabilities=full_capabilities, facing_mode=FACING_USER)
        original_apply = second.apply_constraints

        async def recording_apply(constraints):
            events.append(('apply', 'second'))
            await original_apply(constraints)
        second.apply_constraints = recording_apply

        asyncio.run(session.replace(second))
        assert events.index(('apply', 'second')) < events.index(('stop', 'first'))

    def test_dispose_is_terminal_and_idempotent(self, make_camera):
        camera = make_camera()
        session = start_session(camera)
        asyncio.run(session.dispose())
        asyncio.run(session.dispose())

        assert session.state is SessionState.DISPOSED
        assert camera.stopped is True
        with pytest.raises(SessionStateError):
            asyncio.run(session.replace(make_camera()))
        with pytest.raises(SessionStateError):
            asyncio.run(session.start(make_camera()))

    def test_teardown_hook_failure_does_not_block_dispose(self, make_camera):
        session = start_session(make_camera())

        async def broken_hook():
            raise RuntimeError("boom")
        session.add_teardown_hook(broken_hook)

        asyncio.run(session.dispose())
        assert session.state is SessionState.DISPOSED


class TestCaptureOrchestrator:
    """Test the capture sequence."""

    def test_low_light_end_to_end(self, make_camera, recording_sleep, events, dark_frame, full_capabilities):
        camera = make_camera(frame=dark_frame, capabilities=full_capabilities)
        session = start_session(camera)
        orchestrator = CaptureOrchestrator(
            session,
            sleep=recording_sleep,
            on_shutter=lambda: events.append(('shutter',))
        )

        raw = asyncio.run(orchestrator.capture())

        assert raw.brightness == pytest.approx(60.0)
        assert raw.low_light is True
        assert raw.illumination_cycle == ('off', 'on', 'off')
        assert camera.torch_states == [True, False]
        assert events == [
            ('read',),          # brightness sample
            ('torch', True),
            ('sleep', 0.3),     # torch settle
            ('sleep', 0.3),     # focus settle
            ('shutter',),
            ('read',),          # frame grab
            ('torch', False),
        ]
        assert (raw.width, raw.height) == (64, 48)

    def test_well_lit_capture_skips_torch(self, make_camera, recording_sleep, bright_frame, full_capabilities):
        camera = make_camera(frame=bright_frame, capabilities=full_capabilities)
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        raw = asyncio.run(orchestrator.capture())

        assert raw.low_light is False
        assert raw.illumination_cycle == ('off',)
        assert camera.torch_states == []
        assert recording_sleep.delays == [0.3]

    def test_low_light_without_torch(self, make_camera, recording_sleep, dark_frame):
        camera = make_camera(frame=dark_frame, capabilities={'torch': False})
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        raw = asyncio.run(orchestrator.capture())

        assert raw.low_light is True
        assert camera.torch_states == []
        assert recording_sleep.delays == [0.3]

    def test_unknown_brightness_assumes_adequate_light(self, make_camera, recording_sleep, dark_frame, full_capabilities):
        class UnknownSampler(LuminanceSampler):
            def sample_brightness(self, source):
                return None

        camera = make_camera(frame=dark_frame, capabilities=full_capabilities)
        orchestrator = CaptureOrchestrator(
            start_session(camera), sampler=UnknownSampler(), sleep=recording_sleep
        )

        raw = asyncio.run(orchestrator.capture())

        assert raw.brightness is None
        assert raw.low_light is False
        assert camera.torch_states == []

    def test_custom_timing_policy(self, make_camera, recording_sleep, dark_frame, full_capabilities):
        camera = make_camera(frame=dark_frame, capabilities=full_capabilities)
        orchestrator = CaptureOrchestrator(
            start_session(camera),
            timing=TimingPolicy(torch_settle=0.5, focus_settle=0.4),
            sleep=recording_sleep
        )
        asyncio.run(orchestrator.capture())
        assert recording_sleep.delays == [0.5, 0.4]

    def test_torch_restored_when_grab_fails(self, make_camera, recording_sleep, dark_frame, full_capabilities):
        camera = make_camera(frame=dark_frame, capabilities=full_capabilities)

        def break_sensor():
            camera.read_error = RuntimeError("sensor disconnected")

        orchestrator = CaptureOrchestrator(
            start_session(camera), sleep=recording_sleep, on_shutter=break_sensor
        )

        with pytest.raises(FrameUnavailableError):
            asyncio.run(orchestrator.capture())
        assert camera.torch_states == [True, False]
        assert orchestrator.in_flight is False

    def test_missing_frame_is_capture_error(self, make_camera, recording_sleep, full_capabilities):
        camera = make_camera(frame=None, capabilities=full_capabilities)
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        with pytest.raises(FrameUnavailableError):
            asyncio.run(orchestrator.capture())

    def test_torch_rejection_does_not_abort_capture(self, make_camera, recording_sleep, dark_frame, full_capabilities):
        camera = make_camera(frame=dark_frame, capabilities=full_capabilities, reject={'torch'})
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        raw = asyncio.run(orchestrator.capture())

        assert raw.illumination_cycle == ('off',)
        assert recording_sleep.delays == [0.3]

    def test_front_camera_output_is_mirrored(self, make_camera, recording_sleep, marker_frame):
        camera = make_camera(frame=marker_frame, facing_mode=FACING_USER)
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        raw = asyncio.run(orchestrator.capture())

        assert raw.mirrored is True
        assert np.array_equal(raw.pixels, marker_frame[:, ::-1])
        assert tuple(raw.pixels[0, 0, :3]) == (0, 0, 255)
        assert tuple(raw.pixels[0, -1, :3]) == (255, 0, 0)

    def test_back_camera_output_is_not_mirrored(self, make_camera, recording_sleep, marker_frame):
        camera = make_camera(frame=marker_frame)
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        raw = asyncio.run(orchestrator.capture())

        assert raw.mirrored is False
        assert np.array_equal(raw.pixels, marker_frame)

    def test_each_capture_owns_its_buffer(self, make_camera, recording_sleep, bright_frame):
        camera = make_camera(frame=bright_frame)
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        first = asyncio.run(orchestrator.capture())
        second = asyncio.run(orchestrator.capture())

        assert not np.shares_memory(first.pixels, bright_frame)
        assert not np.shares_memory(first.pixels, second.pixels)
        bright_frame[...] = 0
        assert first.pixels[0, 0, 0] == 200

    def test_capture_requires_active_session(self):
        orchestrator = CaptureOrchestrator(CaptureSession())
        with pytest.raises(SessionStateError):
            asyncio.run(orchestrator.capture())

    def test_dispose_mid_capture_reverts_torch(self, make_camera, dark_frame, full_capabilities):
        camera = make_camera(frame=dark_frame, capabilities=full_capabilities)
        session = start_session(camera)

        async def scenario():
            gate = asyncio.Event()

            async def stalled_sleep(delay):
                await gate.wait()

            orchestrator = CaptureOrchestrator(session, sleep=stalled_sleep)
            task = asyncio.create_task(orchestrator.capture())
            for _ in range(500):
                if camera.torch_states:
                    break
                await asyncio.sleep(0.01)

            await session.dispose()
            return task

        task = asyncio.run(scenario())

        assert task.cancelled()
        assert camera.torch_states == [True, False]
        assert camera.stopped is True
        assert session.state is SessionState.DISPOSED

    def test_refocus_macro_toggle(self, make_camera, recording_sleep):
        camera = make_camera(capabilities={'focus_mode': ['macro', 'continuous']})
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        assert asyncio.run(orchestrator.refocus()) is True

        focus = [c['focus_mode'] for c in camera.applied if 'focus_mode' in c]
        assert focus == ['continuous', 'macro', 'continuous']
        assert recording_sleep.delays == [0.2]

    def test_refocus_zoom_wiggle(self, make_camera, recording_sleep):
        camera = make_camera(capabilities={'zoom': {'min': 1.0, 'max': 4.0}})
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        assert asyncio.run(orchestrator.refocus()) is True

        zooms = [c['zoom'] for c in camera.applied if 'zoom' in c]
        assert zooms == pytest.approx([1.0, 1.1, 1.0])
        assert recording_sleep.delays == [0.1]

    def test_refocus_wiggle_stays_in_range(self, make_camera, recording_sleep):
        camera = make_camera(capabilities={'zoom': {'min': 1.0, 'max': 1.0}})
        orchestrator = CaptureOrchestrator(start_session(camera), sleep=recording_sleep)

        asyncio.run(orchestrator.refocus())

        zooms = [c['zoom'] for c in camera.applied if 'zoom' in c]
        assert zooms == [1.0, 1.0, 1.0]

    def test_refocus_without_focus_support(self, make_camera, recording_sleep):
        orchestrator = CaptureOrchestrator(start_session(make_camera()), sleep=recording_sleep)
        assert asyncio.run(orchestrator.refocus()) is False
