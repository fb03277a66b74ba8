"""
Pytest configuration and fixtures for the gaze capture service tests.
"""
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import numpy as np
import pytest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(__file__))

from config import ServiceConfig, UploadConfig
from dispatcher import MainThreadDispatcher
from error_handlers import CameraInitError, CameraNotInitializedError
from layer1_capture import AuthorizationStatus, CameraPermissionChecker
from layer2_alignment import LandmarkDetector


class FakeCamera:
    """Stands in for CameraHandler; returns the same frame on every read."""

    def __init__(self, frame=None, fail_init=False, read_delay=0.002):
        self.frame = frame if frame is not None else np.zeros((480, 640, 3), dtype=np.uint8)
        self.fail_init = fail_init
        self.read_delay = read_delay
        self.opened = False
        self.reads = 0
        self.released = 0
        self._lock = threading.Lock()

    def initialize(self):
        if self.fail_init:
            raise CameraInitError(0, reason="fake camera refused to open")
        self.opened = True
        return True

    def get_frame(self):
        if not self.opened:
            raise CameraNotInitializedError()
        time.sleep(self.read_delay)
        with self._lock:
            self.reads += 1
        return self.frame

    def is_opened(self):
        return self.opened

    def release(self):
        self.opened = False
        self.released += 1


class FakePermissionChecker(CameraPermissionChecker):
    def __init__(self, status=AuthorizationStatus.AUTHORIZED, grant=True):
        self.status = status
        self.grant = grant
        self.requests = 0

    def authorization_status(self):
        return self.status

    def request_access(self, callback):
        self.requests += 1
        callback(self.grant)


class ScriptedDetector(LandmarkDetector):
    """Returns `observations` for every frame, or raises `error` when set."""

    def __init__(self, observations=None, error=None):
        self.observations = observations or []
        self.error = error
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.observations)


@pytest.fixture
def dispatcher():
    """Main-context dispatcher drained manually by the test."""
    return MainThreadDispatcher()


@pytest.fixture
def fake_camera():
    return FakeCamera()


@pytest.fixture
def sample_image():
    """480x640 BGR image with a horizontal gradient."""
    row = np.linspace(0, 255, 640, dtype=np.uint8)
    gray = np.tile(row, (480, 1))
    return np.dstack([gray, gray, gray])


UPLOAD_URL = "http://upload.test/photos"


@pytest.fixture
def upload_http():
    """requests session double answering every POST with 200 and a body."""
    session = MagicMock()
    session.post.return_value = MagicMock(status_code=200, content=b'{"id": 1}')
    return session


@pytest.fixture
def capture_session(upload_http):
    """CaptureSession wired to fakes; the dispatcher is drained by the test."""
    from app import CaptureSession
    from layer4_upload import ImageUploader

    config = ServiceConfig(upload=UploadConfig(endpoint_url=UPLOAD_URL))
    dispatcher = MainThreadDispatcher()
    executor = ThreadPoolExecutor(max_workers=2)
    uploader = ImageUploader(UPLOAD_URL, dispatcher=dispatcher, executor=executor, session=upload_http)

    session = CaptureSession(
        config,
        camera=FakeCamera(),
        permission_checker=FakePermissionChecker(),
        detector=ScriptedDetector(),
        uploader=uploader,
        dispatcher=dispatcher,
        executor=executor,
    )
    yield session
    session.shutdown()


@pytest.fixture
def client(capture_session):
    """Flask test client."""
    from app import create_app

    app = create_app(capture_session)
    app.config['TESTING'] = True
    with app.test_client() as client:
        yield client
