"""
Layer 1 — Capture
Camera session, capability negotiation, luminance sampling and the
capture sequence (torch, focus settle, frame grab, torch restore).
Output: RawFrame (RGBA numpy buffer)
"""
from .capabilities import (
    CapabilityNegotiator,
    CaptureConfig,
    DeviceCapabilities,
    FocusStrategy,
    NegotiationPolicy,
    ZoomRange,
)
from .camera import OpenCVCamera
from .device import CameraTrack, FrameSource, StreamPreferences, FACING_USER, FACING_ENVIRONMENT
from .frames import FrameSample, RawFrame
from .luminance import LuminanceSampler
from .orchestrator import CaptureOrchestrator, TimingPolicy
from .session import CaptureSession, SessionState

__all__ = [
    'CapabilityNegotiator',
    'CaptureConfig',
    'DeviceCapabilities',
    'FocusStrategy',
    'NegotiationPolicy',
    'ZoomRange',
    'OpenCVCamera',
    'CameraTrack',
    'FrameSource',
    'StreamPreferences',
    'FACING_USER',
    'FACING_ENVIRONMENT',
    'FrameSample',
    'RawFrame',
    'LuminanceSampler',
    'CaptureOrchestrator',
    'TimingPolicy',
    'CaptureSession',
    'SessionState',
]
