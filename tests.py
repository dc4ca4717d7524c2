"""
Tests for the OCR capture Flask application.
"""
import base64
import io
import json
import threading

import cv2
import numpy as np
import pytest

from error_handlers import DeviceAccessError


def png_bytes(value=120, width=16, height=12):
    ok, buffer = cv2.imencode('.png', np.full((height, width, 3), value, dtype=np.uint8))
    assert ok
    return buffer.tobytes()


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'


class TestCameraSession:
    """Test camera start/stop/switch endpoints."""

    def test_start_camera_negotiates(self, client, coordinator):
        response = client.post('/start_camera')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['session']['state'] == 'active'
        assert data['session']['capabilities']['torch'] is True
        assert data['session']['config']['zoom'] == 1.0

    def test_start_camera_twice_reuses_session(self, client, coordinator):
        client.post('/start_camera')
        client.post('/start_camera')
        assert len(coordinator.cameras) == 1

    def test_stop_camera_releases_track(self, client, coordinator):
        client.post('/start_camera')
        response = client.post('/stop_camera')
        assert response.status_code == 200
        assert coordinator.cameras[0].stopped is True
        assert coordinator.session is None

    def test_switch_camera_replaces_stream(self, client, coordinator):
        client.post('/start_camera')
        response = client.post('/switch_camera')
        data = json.loads(response.data)
        assert data['session']['config']['facing_mode'] == 'user'
        assert data['session']['generation'] == 2
        assert coordinator.cameras[0].stopped is True

    def test_switch_camera_keeps_stream_when_device_fails(self, client, coordinator):
        client.post('/start_camera')

        def unavailable(facing_mode):
            raise DeviceAccessError(f"{facing_mode} camera", reason="device busy")
        coordinator.camera_factory = unavailable

        response = client.post('/switch_camera')
        assert response.status_code == 503
        assert json.loads(response.data)['error_code'] == 'DEVICE_ACCESS_FAILED'

        data = json.loads(client.get('/api/status').data)
        assert data['facing_mode'] == 'environment'
        assert data['session']['state'] == 'active'
        assert data['session']['config']['facing_mode'] == 'environment'
        assert data['session']['generation'] == 1
        assert coordinator.cameras[0].stopped is False
        assert coordinator.session.preferences.facing_mode == 'environment'

    def test_switch_camera_releases_new_stream_when_replace_fails(self, client, coordinator, monkeypatch):
        client.post('/start_camera')

        async def failing_replace(track, source=None):
            raise DeviceAccessError("user camera", reason="stream negotiation failed")
        monkeypatch.setattr(coordinator.session, 'replace', failing_replace)

        response = client.post('/switch_camera')
        assert response.status_code == 503
        assert coordinator.cameras[1].stopped is True
        assert coordinator.cameras[0].stopped is False
        assert coordinator.facing_mode == 'environment'

    def test_switch_camera_rejected_while_in_flight(self, client, coordinator):
        client.post('/start_camera')
        coordinator._capture_lock.acquire()
        try:
            response = client.post('/switch_camera')
        finally:
            coordinator._capture_lock.release()
        assert response.status_code == 409
        assert len(coordinator.cameras) == 1
        assert coordinator.facing_mode == 'environment'

    def test_status_before_start(self, client):
        data = json.loads(client.get('/api/status').data)
        assert data['session']['state'] == 'uninitialized'
        assert data['capture_in_progress'] is False


class TestCaptureEndpoint:
    """Test capture and post-processing."""

    def test_capture_requires_session(self, client):
        response = client.post('/capture')
        assert response.status_code == 409
        data = json.loads(response.data)
        assert data['error_code'] == 'SESSION_STATE_INVALID'

    def test_low_light_capture_cycles_torch(self, client, coordinator):
        client.post('/start_camera')
        response = client.post('/capture')
        assert response.status_code == 200

        data = json.loads(response.data)
        assert data['success'] is True
        assert data['mime_type'] == 'image/jpeg'
        assert data['frame']['low_light'] is True
        assert data['frame']['illumination_cycle'] == ['off', 'on', 'off']
        assert base64.b64decode(data['image'])[:2] == b'\xff\xd8'
        assert coordinator.cameras[0].torch_states == [True, False]
        assert coordinator.shutter_count == 1

    def test_capture_with_custom_filters(self, client):
        client.post('/start_camera')
        response = client.post('/capture', json={'filters': {'grayscale': True, 'sharpen': 0}})
        assert response.status_code == 200
        data = json.loads(response.data)
        assert (data['width'], data['height']) == (64, 48)

    def test_capture_rejects_bad_filters(self, client):
        client.post('/start_camera')
        response = client.post('/capture', json={'filters': {'contrast': -1}})
        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error_code'] == 'INVALID_FILTER_OPTIONS'

    def test_capture_without_frame_is_reported(self, client, coordinator):
        client.post('/start_camera')
        coordinator.cameras[0].frame = None
        response = client.post('/capture')
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data['error_code'] == 'FRAME_UNAVAILABLE'

    def test_capture_rejected_while_in_flight(self, client, coordinator):
        client.post('/start_camera')
        coordinator._capture_lock.acquire()
        try:
            response = client.post('/capture')
        finally:
            coordinator._capture_lock.release()
        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'CAPTURE_IN_PROGRESS'


class TestCameraControls:
    """Test brightness, zoom and focus endpoints."""

    def test_brightness_reading(self, client):
        client.post('/start_camera')
        data = json.loads(client.get('/api/brightness').data)
        assert data['brightness'] == pytest.approx(60.0)
        assert data['low_light'] is True

    def test_zoom_clamped(self, client):
        client.post('/start_camera')
        response = client.post('/api/zoom', json={'zoom': 9})
        data = json.loads(response.data)
        assert data['config']['zoom'] == 4.0

    def test_zoom_requires_value(self, client):
        client.post('/start_camera')
        response = client.post('/api/zoom', json={})
        assert response.status_code == 400

    def test_focus_hint(self, client, coordinator):
        client.post('/start_camera')
        data = json.loads(client.post('/api/focus').data)
        assert data['focus_hint_issued'] is True
        zooms = [c['zoom'] for c in coordinator.cameras[0].applied if 'zoom' in c]
        assert zooms == pytest.approx([1.0, 1.1, 1.0])

    @pytest.mark.parametrize('method,url,kwargs', [
        ('get', '/api/brightness', {}),
        ('post', '/api/zoom', {'json': {'zoom': 2}}),
        ('post', '/api/focus', {}),
    ])
    def test_controls_rejected_while_capturing(self, client, coordinator, method, url, kwargs):
        client.post('/start_camera')
        camera = coordinator.cameras[0]
        applied_before = len(camera.applied)
        reads_before = camera.events.count(('read',))

        coordinator._capture_lock.acquire()
        try:
            response = getattr(client, method)(url, **kwargs)
        finally:
            coordinator._capture_lock.release()

        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'CAPTURE_IN_PROGRESS'
        assert len(camera.applied) == applied_before
        assert camera.events.count(('read',)) == reads_before

    def test_brightness_reads_frame_on_capture_loop(self, client, coordinator):
        client.post('/start_camera')
        threads = []
        camera = coordinator.cameras[0]
        original_read = camera.read_frame

        def tracking_read():
            threads.append(threading.current_thread().name)
            return original_read()
        camera.read_frame = tracking_read

        client.get('/api/brightness')
        assert threads
        assert threading.current_thread().name not in threads


class TestProcessEndpoint:
    """Test post-processing of uploaded images."""

    def test_process_requires_image(self, client):
        response = client.post(
            '/api/process',
            data={'grayscale': 'true'},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_IMAGE'

    def test_process_returns_jpeg(self, client):
        response = client.post(
            '/api/process',
            data={'image': (io.BytesIO(png_bytes()), 'page.png'), 'grayscale': 'true'},
            content_type='multipart/form-data'
        )
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert response.data[:2] == b'\xff\xd8'

    def test_process_rejects_invalid_image(self, client):
        response = client.post(
            '/api/process',
            data={'image': (io.BytesIO(b'garbage'), 'page.png')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_process_rejects_invalid_options(self, client):
        response = client.post(
            '/api/process',
            data={'image': (io.BytesIO(png_bytes()), 'page.png'), 'sharpen': '3'},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400


class TestErrorHandling:
    """Test error handling."""

    def test_missing_endpoint_returns_404(self, client):
        response = client.get('/api/nonexistent')
        assert response.status_code == 404

    def test_method_not_allowed(self, client):
        response = client.get('/capture')
        assert response.status_code == 405

    def test_handle_error_for_unexpected_exception(self):
        from error_handlers import handle_error
        result = handle_error(RuntimeError("boom"))
        assert result['error_code'] == 'UNEXPECTED_ERROR'
        assert result['details']['error_type'] == 'RuntimeError'


class TestCameraIndexSelection:
    """Test facing mode to V4L2 device mapping."""

    def test_configured_facing_uses_primary_index(self, monkeypatch):
        import app as app_module
        monkeypatch.setattr(app_module, 'CAMERA_INDEX', 2)
        monkeypatch.setattr(app_module, 'CAMERA_FACING', 'environment')
        assert app_module.camera_index_for('environment') == 2

    def test_other_facing_uses_alternate_index(self, monkeypatch):
        import app as app_module
        monkeypatch.setattr(app_module, 'CAMERA_FACING', 'environment')
        monkeypatch.setattr(app_module, 'CAMERA_ALT_INDEX', '1')
        assert app_module.camera_index_for('user') == 1

    def test_other_facing_without_alternate_is_refused(self, monkeypatch):
        import app as app_module
        monkeypatch.setattr(app_module, 'CAMERA_FACING', 'environment')
        monkeypatch.setattr(app_module, 'CAMERA_ALT_INDEX', None)
        with pytest.raises(DeviceAccessError):
            app_module.camera_index_for('user')
