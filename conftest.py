"""
Pytest configuration and fixtures for OCR capture tests.
"""
import asyncio
import os
import sys

import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from layer1_capture.device import CameraTrack, FrameSource, FACING_ENVIRONMENT  # noqa: E402


class FakeCamera(CameraTrack, FrameSource):
    """In-memory camera that records every constraint and frame read."""

    def __init__(
        self,
        frame=None,
        capabilities=None,
        facing_mode=FACING_ENVIRONMENT,
        reject=(),
        events=None,
        width=None,
        height=None
    ):
        self.frame = frame
        self._capabilities = capabilities or {}
        self._facing_mode = facing_mode
        self.reject = set(reject)
        self.events = events if events is not None else []
        self.applied = []
        self.rejected = []
        self.read_error = None
        self.stopped = False
        self._width = width
        self._height = height

    @property
    def facing_mode(self):
        return self._facing_mode

    @property
    def width(self):
        if self._width is not None:
            return self._width
        return 0 if self.frame is None else self.frame.shape[1]

    @property
    def height(self):
        if self._height is not None:
            return self._height
        return 0 if self.frame is None else self.frame.shape[0]

    def get_capabilities(self):
        return dict(self._capabilities)

    async def apply_constraints(self, constraints):
        for key in constraints:
            if key in self.reject:
                self.rejected.append(dict(constraints))
                raise RuntimeError(f"OverconstrainedError: {key}")
        self.applied.append(dict(constraints))
        if 'torch' in constraints:
            self.events.append(('torch', constraints['torch']))

    def read_frame(self):
        if self.read_error is not None:
            raise self.read_error
        self.events.append(('read',))
        return self.frame

    def stop(self):
        self.stopped = True

    @property
    def torch_states(self):
        return [c['torch'] for c in self.applied if 'torch' in c]


class RecordingSleep:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self, events=None):
        self.events = events if events is not None else []
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        self.events.append(('sleep', delay))
        await asyncio.sleep(0)


def solid_rgba(value, width=64, height=48, alpha=255):
    """Uniform RGBA frame."""
    frame = np.empty((height, width, 4), dtype=np.uint8)
    frame[..., :3] = value
    frame[..., 3] = alpha
    return frame


FULL_CAPABILITIES = {
    'torch': True,
    'zoom': {'min': 1.0, 'max': 4.0, 'step': 0.1},
    'focus_mode': ['continuous', 'manual'],
}


@pytest.fixture
def events():
    """Shared ordered log of device and timing events."""
    return []


@pytest.fixture
def make_camera(events):
    """Factory for FakeCamera instances sharing the event log."""
    def factory(**kwargs):
        kwargs.setdefault('events', events)
        return FakeCamera(**kwargs)
    return factory


@pytest.fixture
def recording_sleep(events):
    return RecordingSleep(events)


@pytest.fixture
def dark_frame():
    """Low-light scene (luminance 60)."""
    return solid_rgba(60)


@pytest.fixture
def bright_frame():
    """Well-lit scene (luminance 200)."""
    return solid_rgba(200)


@pytest.fixture
def marker_frame():
    """Frame with a red left column and blue right column."""
    frame = solid_rgba(128, width=8, height=4)
    frame[:, 0, :3] = (255, 0, 0)
    frame[:, -1, :3] = (0, 0, 255)
    return frame


@pytest.fixture
def full_capabilities():
    return {k: (dict(v) if isinstance(v, dict) else v) for k, v in FULL_CAPABILITIES.items()}


@pytest.fixture
def coordinator(make_camera, dark_frame, full_capabilities):
    """CaptureCoordinator wired to fake cameras with zero settle delays."""
    import app as app_module
    from layer1_capture import TimingPolicy

    cameras = []

    def factory(facing_mode):
        camera = make_camera(
            frame=dark_frame,
            capabilities=full_capabilities,
            facing_mode=facing_mode
        )
        cameras.append(camera)
        return camera

    coord = app_module.CaptureCoordinator(
        camera_factory=factory,
        timing=TimingPolicy(torch_settle=0, focus_settle=0, macro_refocus=0, zoom_wiggle=0),
        facing_mode=FACING_ENVIRONMENT
    )
    coord.cameras = cameras
    yield coord
    coord.shutdown()


@pytest.fixture
def app(coordinator, monkeypatch):
    """Create Flask test application."""
    import app as app_module
    monkeypatch.setattr(app_module, 'coordinator', coordinator)
    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
