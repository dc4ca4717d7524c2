"""
OCR Capture Web Application
Thin coordinator for the layered capture system.

Provides REST API for:
- Camera session control (start, stop, switch, zoom, refocus)
- Low-light aware still capture with OCR post-processing
- Post-processing of uploaded images
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import asyncio
import concurrent.futures
import contextlib
import logging
import os
import threading

# Import layers
from layer1_capture import (
    CaptureOrchestrator,
    CaptureSession,
    OpenCVCamera,
    StreamPreferences,
    TimingPolicy,
    FACING_ENVIRONMENT,
    FACING_USER,
)
from layer2_image_enhancer import FilterOptions, PixelPostProcessor

# Import error handling
from error_handlers import (
    CaptureError,
    CaptureInProgressError,
    DeviceAccessError,
    FrameUnavailableError,
    SessionStateError,
    handle_error,
    status_code_for,
)

# Setup logging
logging.basicConfig(
    level=getattr(logging, os.environ.get('LOG_LEVEL', 'DEBUG').upper(), logging.DEBUG),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def parse_zoom_range(value):
    """Parse "min,max" into a tuple, or None when unset."""
    if not value:
        return None
    try:
        low, high = (float(part) for part in value.split(','))
    except ValueError:
        logger.warning(f"Ignoring malformed CAMERA_ZOOM_RANGE={value!r}")
        return None
    return (low, high)


# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
CAMERA_FACING = os.environ.get('CAMERA_FACING', FACING_ENVIRONMENT)
CAMERA_ALT_INDEX = os.environ.get('CAMERA_ALT_INDEX')  # device for the other facing mode
CAMERA_ZOOM_RANGE = parse_zoom_range(os.environ.get('CAMERA_ZOOM_RANGE'))
JPEG_QUALITY = int(os.environ.get('JPEG_QUALITY', 98))
TORCH_SETTLE_MS = int(os.environ.get('TORCH_SETTLE_MS', 300))
FOCUS_SETTLE_MS = int(os.environ.get('FOCUS_SETTLE_MS', 300))


def camera_index_for(facing_mode):
    """
    V4L2 device index for a facing mode.

    CAMERA_INDEX serves CAMERA_FACING; CAMERA_ALT_INDEX serves the other
    mode. Each mode needs its own device because V4L2 refuses to open a
    device twice while the current stream still holds it.

    Raises:
        DeviceAccessError: No device configured for the requested mode
    """
    if facing_mode == CAMERA_FACING:
        return CAMERA_INDEX
    if CAMERA_ALT_INDEX is None:
        raise DeviceAccessError(
            f"{facing_mode} camera",
            reason="CAMERA_ALT_INDEX is not configured"
        )
    return int(CAMERA_ALT_INDEX)


def open_opencv_camera(facing_mode):
    """Default camera factory: open the V4L2 device for the facing mode."""
    camera = OpenCVCamera(
        camera_index=camera_index_for(facing_mode),
        preferences=StreamPreferences(facing_mode=facing_mode),
        zoom_range=CAMERA_ZOOM_RANGE,
    )
    camera.initialize()
    return camera


class CaptureCoordinator:
    """
    Coordinates the capture pipeline across layers.
    Owns the session and an asyncio loop on a background thread so that
    settle delays never block request threads.
    """

    def __init__(self, camera_factory, jpeg_quality=JPEG_QUALITY, timing=None, facing_mode=CAMERA_FACING):
        """
        Args:
            camera_factory: Callable(facing_mode) returning an opened camera
                that implements CameraTrack and FrameSource
            jpeg_quality: JPEG quality for processed output
            timing: Settle delays for the orchestrator
            facing_mode: Initial camera facing mode
        """
        logger.info("Initializing CaptureCoordinator")
        self.camera_factory = camera_factory
        self.timing = timing or TimingPolicy()
        self.facing_mode = facing_mode

        # Layer 2: Post-processing
        self.processor = PixelPostProcessor(jpeg_quality=jpeg_quality)

        # Layer 1: created on start_camera
        self.session = None
        self.orchestrator = None

        self.shutter_count = 0
        self._capture_lock = threading.Lock()
        self._loop = None
        self._loop_lock = threading.Lock()

    def _ensure_loop(self):
        with self._loop_lock:
            if self._loop is None:
                self._loop = asyncio.new_event_loop()
                thread = threading.Thread(
                    target=self._loop.run_forever,
                    name='capture-loop',
                    daemon=True
                )
                thread.start()
            return self._loop

    def run(self, coro):
        """Run a coroutine on the capture loop and wait for its result."""
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        return future.result()

    def shutdown(self):
        """Dispose the session and stop the capture loop."""
        self.stop_camera()
        with self._loop_lock:
            if self._loop is not None:
                self._loop.call_soon_threadsafe(self._loop.stop)
                self._loop = None

    def _on_shutter(self):
        self.shutter_count += 1
        logger.debug(f"Shutter #{self.shutter_count}")

    def _require_session(self, operation):
        if self.session is None or not self.session.is_active:
            state = self.session.state.value if self.session is not None else 'uninitialized'
            raise SessionStateError(state, operation)
        return self.session

    def start_camera(self):
        """
        Open the camera and negotiate capabilities (Layer 1)

        Returns:
            dict: Session status
        """
        if self.session is not None and self.session.is_active:
            logger.debug("Camera already started")
            return self.session.to_dict()

        camera = self.camera_factory(self.facing_mode)
        session = CaptureSession(preferences=StreamPreferences(facing_mode=self.facing_mode))
        orchestrator = CaptureOrchestrator(
            session,
            timing=self.timing,
            on_shutter=self._on_shutter
        )
        self.run(session.start(camera))

        self.session = session
        self.orchestrator = orchestrator
        return session.to_dict()

    def stop_camera(self):
        """Release camera resources (Layer 1)"""
        if self.session is None:
            return
        self.run(self.session.dispose())
        self.session = None
        self.orchestrator = None

    def switch_camera(self):
        """Toggle between front and back camera, replacing the stream."""
        target = FACING_ENVIRONMENT if self.facing_mode == FACING_USER else FACING_USER
        logger.info(f"Switching camera to {target}")

        if self.session is None or not self.session.is_active:
            self.facing_mode = target
            return {'state': 'uninitialized', 'facing_mode': self.facing_mode}

        with self._single_flight():
            # Current stream stays untouched if the new device fails to open
            camera = self.camera_factory(target)
            try:
                self.run(self.session.replace(camera))
            except Exception:
                camera.stop()
                raise

            self.facing_mode = target
            self.session.preferences.facing_mode = target
        return self.session.to_dict()

    @contextlib.contextmanager
    def _single_flight(self):
        """Hold the capture lock for device access, or reject if it is taken."""
        if not self._capture_lock.acquire(blocking=False):
            raise CaptureInProgressError()
        try:
            yield
        finally:
            self._capture_lock.release()

    def read_brightness(self):
        session = self._require_session('read brightness')
        sampler = self.orchestrator.sampler

        async def sample():
            return await asyncio.to_thread(sampler.sample_brightness, session.source)

        with self._single_flight():
            brightness = self.run(sample())
        return {
            'brightness': round(brightness, 2) if brightness is not None else None,
            'low_light': sampler.is_low_light(brightness),
        }

    def capture(self, options=None):
        """
        Execute the capture pipeline: Layer 1 -> Layer 2

        Returns:
            tuple: (RawFrame, ProcessedImage)

        Raises:
            CaptureInProgressError: Another capture is still running
        """
        self._require_session('capture')
        if not self._capture_lock.acquire(blocking=False):
            raise CaptureInProgressError()

        logger.info("=" * 60)
        logger.info("Starting capture pipeline")
        try:
            raw, processed = self.run(
                self.orchestrator.capture_and_process(self.processor, options or FilterOptions.for_ocr())
            )
        except (asyncio.CancelledError, concurrent.futures.CancelledError):
            raise FrameUnavailableError("Capture cancelled because the stream was released")
        finally:
            self._capture_lock.release()

        logger.info(f"[Pipeline] Success - {processed.width}x{processed.height}, {len(processed.data)} bytes")
        logger.info("=" * 60)
        return raw, processed

    def set_zoom(self, level):
        session = self._require_session('set zoom')
        with self._single_flight():
            return self.run(session.set_zoom(level))

    def refocus(self):
        self._require_session('refocus')
        with self._single_flight():
            return self.run(self.orchestrator.refocus())

    def status(self):
        result = {
            'facing_mode': self.facing_mode,
            'capture_in_progress': self._capture_lock.locked(),
            'processor': self.processor.get_stats(),
            'shutter_count': self.shutter_count,
        }
        if self.session is not None:
            result['session'] = self.session.to_dict()
        else:
            result['session'] = {'state': 'uninitialized'}
        return result


app = Flask(__name__)

# Enable CORS for cross-origin requests from the capture UI
CORS(app, origins=["*"])

# Initialize capture coordinator
logger.info("Starting application initialization")

coordinator = CaptureCoordinator(
    camera_factory=open_opencv_camera,
    jpeg_quality=JPEG_QUALITY,
    timing=TimingPolicy(
        torch_settle=TORCH_SETTLE_MS / 1000.0,
        focus_settle=FOCUS_SETTLE_MS / 1000.0
    )
)


def error_response(error):
    return jsonify(handle_error(error)), status_code_for(error)


# ============================================================================
# Flask Routes - Camera Session
# ============================================================================

@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Open camera and negotiate capabilities"""
    logger.info("Start camera request received")
    try:
        session = coordinator.start_camera()
        return jsonify({"success": True, "session": session})
    except Exception as e:
        return error_response(e)


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop camera"""
    logger.info("Stop camera request received")
    try:
        coordinator.stop_camera()
        return jsonify({"success": True})
    except Exception as e:
        return error_response(e)


@app.route('/switch_camera', methods=['POST'])
def switch_camera():
    """Switch between front and back camera"""
    try:
        session = coordinator.switch_camera()
        return jsonify({"success": True, "session": session})
    except Exception as e:
        return error_response(e)


@app.route('/capture', methods=['POST'])
def capture():
    """
    Capture a still and post-process it for OCR.

    Request (optional JSON):
        {"filters": {"grayscale": true, "contrast": 1.2, "brightness": 20, "sharpen": 0.7}}
    """
    logger.info("Capture request received from client")
    try:
        payload = request.get_json(silent=True) or {}
        filters = payload.get('filters') if isinstance(payload, dict) else None
        options = FilterOptions.from_dict(filters) if filters is not None else None

        raw, processed = coordinator.capture(options)
        return jsonify({
            "success": True,
            "image": processed.to_base64(),
            "mime_type": processed.mime_type,
            "width": processed.width,
            "height": processed.height,
            "frame": raw.to_dict()
        })
    except Exception as e:
        return error_response(e)


@app.route('/api/brightness', methods=['GET'])
def api_brightness():
    """Current scene brightness for UI feedback"""
    try:
        reading = coordinator.read_brightness()
        return jsonify({"success": True, **reading})
    except Exception as e:
        return error_response(e)


@app.route('/api/zoom', methods=['POST'])
def api_zoom():
    """Set zoom level (clamped to the device range)"""
    payload = request.get_json(silent=True) or {}
    try:
        level = float(payload['zoom'])
    except (KeyError, TypeError, ValueError):
        return jsonify({
            "success": False,
            "error": "Request must include a numeric 'zoom'",
            "error_code": "INVALID_ZOOM"
        }), 400

    try:
        config = coordinator.set_zoom(level)
        return jsonify({"success": True, "config": config.to_dict()})
    except Exception as e:
        return error_response(e)


@app.route('/api/focus', methods=['POST'])
def api_focus():
    """Tap-to-focus: ask autofocus to re-evaluate"""
    try:
        issued = coordinator.refocus()
        return jsonify({"success": True, "focus_hint_issued": issued})
    except Exception as e:
        return error_response(e)


# ============================================================================
# API Endpoints for Microservice Communication
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "ocr-capture",
        "version": "1.0.0"
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and camera session"""
    return jsonify({
        "success": True,
        **coordinator.status(),
        "endpoints": {
            "health": "/health",
            "capture": "/capture",
            "process": "/api/process",
            "brightness": "/api/brightness",
            "zoom": "/api/zoom",
            "focus": "/api/focus"
        }
    })


@app.route("/api/process", methods=["POST"])
def api_process():
    """
    Post-process an uploaded image for OCR.

    Request:
        - multipart/form-data with 'image' file and optional filter fields
          (grayscale, contrast, brightness, sharpen)

    Response:
        image/jpeg bytes
    """
    logger.info("API process request received")

    if 'image' not in request.files:
        return jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400

    image_file = request.files['image']
    if image_file.filename == '':
        return jsonify({
            "success": False,
            "error": "Empty filename",
            "error_code": "EMPTY_FILENAME"
        }), 400

    try:
        fields = {key: request.form[key] for key in ('grayscale', 'contrast', 'brightness', 'sharpen') if key in request.form}
        options = FilterOptions.from_dict(fields) if fields else FilterOptions.for_ocr()
        processed = coordinator.processor.process_encoded(image_file.read(), options)
    except CaptureError as e:
        return error_response(e)
    except Exception as e:
        logger.error(f"Unexpected error during API processing: {e}")
        return error_response(e)

    return Response(processed.data, mimetype=processed.mime_type)


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("OCR CAPTURE SERVER")
    print("=" * 60)
    print("\n📡 API Endpoints:")
    print("  GET  /health           - Health check")
    print("  GET  /api/status       - Service status")
    print("  POST /start_camera     - Open camera session")
    print("  POST /capture          - Capture and post-process")
    print("  POST /api/process      - Post-process an uploaded image")
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{CAMERA_INDEX} ({CAMERA_FACING})")
    print(f"  JPEG quality: {JPEG_QUALITY}")
    print("\n" + "=" * 60 + "\n")

    logger.info("Flask server starting")
    try:
        app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), threaded=True)
    finally:
        coordinator.shutdown()
