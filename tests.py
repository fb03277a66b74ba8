"""
Tests for the gaze-gated capture service.
"""
import json
import sys
import threading
import time
from concurrent.futures import Future
from types import SimpleNamespace
from unittest.mock import MagicMock, PropertyMock, patch

import cv2
import numpy as np
import pytest
import requests

from conftest import UPLOAD_URL, FakeCamera, FakePermissionChecker, ScriptedDetector
from config import ServiceConfig
from dispatcher import MainThreadDispatcher
from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    CaptureError,
    CropError,
    DetectionError,
    EncodingError,
    FrameCaptureError,
    GazeCaptureError,
    InvalidEndpointError,
    InvalidResponseError,
    NoVideoConnectionError,
    ServerError,
    TransportError,
    handle_error,
)
from layer1_capture import (
    AuthorizationStatus,
    CameraHandler,
    CapturedImage,
    DevicePermissionChecker,
    Frame,
    FrameSource,
    REMEDIATION_HINT,
    normalize_orientation,
)
from layer2_alignment import (
    ALIGNMENT_THRESHOLD,
    LEFT_EYE,
    RIGHT_EYE,
    CaptureGate,
    FaceObservation,
    GazeMonitor,
    MediaPipeLandmarkDetector,
    apply_observations,
    evaluate_eyes,
    evaluate_observation,
)
from layer3_crop import (
    AspectRatio,
    CropCancelled,
    CroppedImage,
    CropRect,
    WebCropCollaborator,
    apply_crop,
)
from layer4_upload import CONTENT_TYPE, ImageUploader, UploadOutcome, create_upload_session
from pipeline import CapturePipeline, PipelineState, TriggerResult


def face(left_y, right_y, left_x=0.6, right_x=0.4):
    return FaceObservation(landmarks={
        LEFT_EYE: [(left_x, left_y)],
        RIGHT_EYE: [(right_x, right_y)],
    })


def blank_frame(index=1):
    return Frame(image=np.zeros((4, 4, 3), dtype=np.uint8), index=index, timestamp=0.0)


def wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def drain_until(dispatcher, predicate, timeout=2.0):
    """Run main-context callbacks until predicate holds."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        dispatcher.run_pending()
        if predicate():
            return True
        time.sleep(0.01)
    dispatcher.run_pending()
    return predicate()


# ============================================================================
# Layer 2: alignment
# ============================================================================

class TestAlignmentEvaluator:
    """Test the eye-level heuristic."""

    def test_level_eyes_are_aligned(self):
        """Test eyes 0.049 apart count as looking straight."""
        result = evaluate_eyes((0.6, 0.5), (0.4, 0.549))
        assert result.is_valid
        assert result.is_aligned

    def test_uneven_eyes_are_not_aligned(self):
        """Test eyes 0.051 apart do not count as looking straight."""
        result = evaluate_eyes((0.6, 0.5), (0.4, 0.551))
        assert result.is_valid
        assert not result.is_aligned

    @pytest.mark.parametrize("left_y,right_y", [
        (0.5, 0.5),
        (0.5, 0.52),
        (0.3, 0.36),
        (0.7, 0.2),
        (0.41, 0.45),
        (0.9, 0.96),
        (0.02, 0.98),
    ])
    def test_aligned_iff_height_delta_below_threshold(self, left_y, right_y):
        """Test the decision matches |left.y - right.y| < threshold."""
        result = evaluate_eyes((0.6, left_y), (0.4, right_y))
        assert result.is_valid
        assert result.is_aligned == (abs(left_y - right_y) < ALIGNMENT_THRESHOLD)

    @pytest.mark.parametrize("point", [
        (0.0, 0.5),
        (1.0, 0.5),
        (0.5, 0.0),
        (0.5, 1.0),
        (-0.1, 0.5),
        (0.5, 1.2),
    ])
    def test_points_on_or_outside_bounds_are_invalid(self, point):
        """Test coordinates must lie strictly inside (0, 1)."""
        assert not evaluate_eyes(point, (0.4, 0.5)).is_valid
        assert not evaluate_eyes((0.6, 0.5), point).is_valid

    def test_custom_threshold(self):
        """Test a looser threshold accepts a wider tilt."""
        assert not evaluate_eyes((0.6, 0.5), (0.4, 0.58)).is_aligned
        assert evaluate_eyes((0.6, 0.5), (0.4, 0.58), threshold=0.1).is_aligned

    def test_missing_eye_is_invalid(self):
        """Test a face without one eye group is invalid."""
        observation = FaceObservation(landmarks={LEFT_EYE: [(0.6, 0.5)]})
        assert not evaluate_observation(observation).is_valid

    def test_empty_eye_group_is_invalid(self):
        """Test an empty landmark list is treated as missing."""
        observation = FaceObservation(landmarks={LEFT_EYE: [(0.6, 0.5)], RIGHT_EYE: []})
        assert not evaluate_observation(observation).is_valid

    def test_first_point_of_each_group_decides(self):
        """Test only the first point of each eye group is compared."""
        observation = FaceObservation(landmarks={
            LEFT_EYE: [(0.6, 0.5), (0.7, 0.9)],
            RIGHT_EYE: [(0.4, 0.51), (0.3, 0.1)],
        })
        assert evaluate_observation(observation).is_aligned

    def test_result_serializes(self):
        """Test AlignmentResult.to_dict rounds the delta."""
        data = evaluate_eyes((0.6, 0.5), (0.4, 0.52)).to_dict()
        assert data == {'is_valid': True, 'is_aligned': True, 'eye_height_delta': 0.02}


class TestApplyObservations:
    """Test how a frame's faces are written to the gate."""

    def test_invalid_observation_leaves_gate_unchanged(self):
        """Test an invalid face does not touch the gate."""
        gate = CaptureGate(initial=True)
        result = apply_observations([face(0.0, 0.5)], gate)
        assert result is None
        assert gate.get() is True
        assert gate.snapshot()[1] == 0

    def test_no_faces_leaves_gate_unchanged(self):
        """Test a frame without faces does not touch the gate."""
        gate = CaptureGate(initial=True)
        assert apply_observations([], gate) is None
        assert gate.get() is True

    def test_last_valid_face_wins(self):
        """Test the last valid face of a frame decides the gate."""
        gate = CaptureGate()
        apply_observations([face(0.5, 0.5), face(0.3, 0.6)], gate)
        assert gate.get() is False

        result = apply_observations([face(0.3, 0.6), face(0.5, 0.51), face(1.5, 0.5)], gate)
        assert gate.get() is True
        assert result.is_aligned

    def test_every_valid_face_is_written(self):
        """Test each valid face counts as one gate write."""
        gate = CaptureGate()
        apply_observations([face(0.5, 0.5), face(0.0, 0.5), face(0.5, 0.7)], gate)
        assert gate.snapshot() == (False, 2)


class TestCaptureGate:
    """Test the shared capture gate."""

    def test_starts_closed(self):
        """Test a new gate is False."""
        assert CaptureGate().get() is False

    def test_set_reports_change(self):
        """Test set returns whether the value changed."""
        gate = CaptureGate()
        assert gate.set(True) is True
        assert gate.set(True) is False
        assert gate.set(False) is True

    def test_concurrent_access(self):
        """Test concurrent writers and readers only ever see whole booleans."""
        gate = CaptureGate()
        seen = []
        stop = threading.Event()

        def writer(offset):
            for i in range(1000):
                gate.set((i + offset) % 2 == 0)

        def reader():
            while not stop.is_set():
                seen.append(gate.get())

        readers = [threading.Thread(target=reader) for _ in range(2)]
        writers = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for thread in readers + writers:
            thread.start()
        for thread in writers:
            thread.join()
        stop.set()
        for thread in readers:
            thread.join()

        assert seen
        assert all(value is True or value is False for value in seen)
        assert gate.snapshot()[1] == 4000


class TestGazeMonitor:
    """Test the per-frame gaze monitor."""

    def test_gate_change_is_posted_to_main_context(self, dispatcher):
        """Test gate changes reach the callback only through the dispatcher."""
        gate = CaptureGate()
        changes = []
        monitor = GazeMonitor(ScriptedDetector([face(0.5, 0.51)]), gate, dispatcher, changes.append)

        monitor.on_frame(blank_frame())
        assert gate.get() is True
        assert changes == []

        dispatcher.run_pending()
        assert changes == [True]

    def test_unchanged_gate_posts_nothing(self, dispatcher):
        """Test repeated identical decisions do not notify."""
        monitor = GazeMonitor(ScriptedDetector([face(0.5, 0.51)]), CaptureGate(), dispatcher, lambda _: None)
        monitor.on_frame(blank_frame(1))
        dispatcher.run_pending()
        monitor.on_frame(blank_frame(2))
        assert dispatcher.run_pending() == 0

    def test_detection_error_skips_frame(self, dispatcher):
        """Test a failing detector leaves the gate untouched."""
        gate = CaptureGate(initial=True)
        detector = ScriptedDetector(error=DetectionError("model crashed"))
        monitor = GazeMonitor(detector, gate, dispatcher, lambda _: None)

        monitor.on_frame(blank_frame())

        assert gate.snapshot() == (True, 0)
        assert monitor.detection_errors == 1
        assert monitor.frames_processed == 0
        assert dispatcher.run_pending() == 0

    def test_stats(self, dispatcher):
        """Test monitor stats report the last decision."""
        monitor = GazeMonitor(ScriptedDetector([face(0.5, 0.7), face(0.0, 0.0)]), CaptureGate(), dispatcher)
        monitor.on_frame(blank_frame())
        stats = monitor.stats()
        assert stats['frames_processed'] == 1
        assert stats['faces_last_frame'] == 2
        assert stats['last_result']['is_aligned'] is False


def broken_mediapipe_modules(error):
    """sys.modules entries for a mediapipe whose FaceLandmarker cannot be created."""
    vision = MagicMock()
    vision.FaceLandmarker.create_from_options.side_effect = error
    tasks_python = MagicMock(vision=vision)
    tasks = MagicMock(python=tasks_python)
    return {
        'mediapipe': MagicMock(tasks=tasks),
        'mediapipe.tasks': tasks,
        'mediapipe.tasks.python': tasks_python,
        'mediapipe.tasks.python.vision': vision,
    }


class TestMediaPipeDetector:
    """Test the MediaPipe adapter without a real model."""

    def test_missing_model_does_not_load(self, tmp_path):
        """Test load() returns False when the model file is absent."""
        detector = MediaPipeLandmarkDetector(model_path=str(tmp_path / "missing.task"))
        assert detector.load() is False
        assert not detector.is_loaded

    def test_corrupt_model_does_not_load(self, tmp_path):
        """Test load() returns False when the landmarker cannot be built."""
        model = tmp_path / "face_landmarker.task"
        model.write_bytes(b"not a zip archive")
        detector = MediaPipeLandmarkDetector(model_path=str(model))

        with patch.dict(sys.modules, broken_mediapipe_modules(RuntimeError("Unable to open zip archive"))):
            assert detector.load() is False

        assert not detector.is_loaded
        with pytest.raises(DetectionError):
            detector.detect(blank_frame())

    def test_detect_before_load_raises(self):
        """Test detection without a model raises DetectionError."""
        with pytest.raises(DetectionError):
            MediaPipeLandmarkDetector().detect(blank_frame())

    def test_eye_groups_start_at_outer_corners(self):
        """Test the eye index lists start at the outer eye corners."""
        assert MediaPipeLandmarkDetector.LEFT_EYE_INDICES[0] == 263
        assert MediaPipeLandmarkDetector.RIGHT_EYE_INDICES[0] == 33


# ============================================================================
# Layer 1: capture
# ============================================================================

class TestOrientation:
    """Test orientation normalization."""

    def test_zero_rotation_is_identity(self, sample_image):
        assert normalize_orientation(sample_image, 0) is sample_image

    def test_quarter_turn_gives_portrait(self, sample_image):
        """Test a 90 degree turn swaps width and height."""
        rotated = normalize_orientation(sample_image, 90)
        assert rotated.shape == (640, 480, 3)

    def test_invalid_rotation(self, sample_image):
        with pytest.raises(ValueError):
            normalize_orientation(sample_image, 45)


class TestCameraHandler:
    """Test the OpenCV camera wrapper with a mocked device."""

    def test_missing_device(self):
        camera = CameraHandler(camera_index=7)
        with patch.object(CameraHandler, '_check_device_exists', return_value=False):
            with pytest.raises(CameraNotFoundError):
                camera.initialize()

    def test_device_that_will_not_open(self):
        capture = MagicMock()
        capture.isOpened.return_value = False
        with patch.object(CameraHandler, '_check_device_exists', return_value=True), \
                patch('layer1_capture.camera.cv2.VideoCapture', return_value=capture):
            with pytest.raises(CameraInitError):
                CameraHandler().initialize()

    def test_read_before_initialize(self):
        with pytest.raises(CameraNotInitializedError):
            CameraHandler().get_frame()

    def test_reads_and_releases(self, sample_image):
        capture = MagicMock()
        capture.isOpened.return_value = True
        capture.get.side_effect = lambda prop: {
            cv2.CAP_PROP_FRAME_WIDTH: 640,
            cv2.CAP_PROP_FRAME_HEIGHT: 480,
            cv2.CAP_PROP_FPS: 30,
        }.get(prop, 0)
        capture.read.side_effect = [(True, sample_image), (False, None)]

        with patch.object(CameraHandler, '_check_device_exists', return_value=True), \
                patch('layer1_capture.camera.cv2.VideoCapture', return_value=capture):
            with CameraHandler(config={'width': 640, 'height': 480}) as camera:
                assert camera.get_resolution() == (640, 480)
                assert camera.get_frame() is sample_image
                with pytest.raises(FrameCaptureError):
                    camera.get_frame()

        capture.release.assert_called_once()
        capture.set.assert_any_call(cv2.CAP_PROP_FRAME_WIDTH, 640)


def patched_device(path):
    return patch.object(DevicePermissionChecker, 'device_path', new_callable=PropertyMock, return_value=str(path))


@pytest.mark.skipif(not sys.platform.startswith('linux'), reason="device nodes are Linux only")
class TestDevicePermissionChecker:
    """Test device-node based authorization."""

    def test_missing_device_is_unknown(self, tmp_path):
        with patched_device(tmp_path / "video9"):
            assert DevicePermissionChecker(9).authorization_status() == AuthorizationStatus.UNKNOWN

    def test_accessible_device_is_authorized(self, tmp_path):
        node = tmp_path / "video0"
        node.write_bytes(b"")
        with patched_device(node):
            assert DevicePermissionChecker(0).authorization_status() == AuthorizationStatus.AUTHORIZED

    def test_request_access_answers_asynchronously(self, tmp_path):
        answers = []
        with patched_device(tmp_path / "video9"):
            DevicePermissionChecker(9).request_access(answers.append)
            assert wait_for(lambda: answers)
        assert answers == [False]


class TestFrameSource:
    """Test the camera session."""

    def test_delivers_analysis_frames(self, dispatcher):
        """Test frames reach the consumer while the session runs."""
        camera = FakeCamera()
        frames = []
        source = FrameSource(camera, FakePermissionChecker(), dispatcher, on_frame=frames.append)

        assert source.start() == AuthorizationStatus.AUTHORIZED
        assert source.is_running
        assert wait_for(lambda: len(frames) >= 3)

        source.shutdown()
        assert not source.is_running
        assert camera.released == 1
        assert [f.index for f in frames] == sorted(f.index for f in frames)

    def test_analysis_frames_are_downscaled(self, dispatcher):
        """Test analysis frames are reduced to the analysis width."""
        camera = FakeCamera(frame=np.zeros((1080, 1920, 3), dtype=np.uint8))
        frames = []
        source = FrameSource(camera, FakePermissionChecker(), dispatcher, on_frame=frames.append)
        source.start()
        assert wait_for(lambda: frames)
        source.shutdown()
        assert frames[0].size == (640, 360)

    def test_device_orientation_applies_to_frames_and_stills(self, dispatcher):
        """Test a rotated device yields upright analysis frames and stills."""
        frames = []
        source = FrameSource(
            FakeCamera(), FakePermissionChecker(), dispatcher,
            on_frame=frames.append, device_orientation=90
        )
        source.start()
        assert wait_for(lambda: frames)

        still = source.capture_still().result(timeout=2)
        source.shutdown()

        assert frames[0].size == (480, 640)
        assert frames[0].rotation == 90
        assert still.image.shape == (640, 480, 3)
        assert still.metadata['size'] == (480, 640)

    def test_still_is_full_resolution_copy(self, dispatcher):
        """Test stills are taken from the raw frame, not the analysis frame."""
        raw = np.full((1080, 1920, 3), 7, dtype=np.uint8)
        frames = []
        source = FrameSource(FakeCamera(frame=raw), FakePermissionChecker(), dispatcher, on_frame=frames.append)
        source.start()
        assert wait_for(lambda: frames)

        still = source.capture_still().result(timeout=2)
        source.shutdown()

        assert still.image.shape == (1080, 1920, 3)
        assert still.image is not raw

    def test_still_without_session_fails(self, dispatcher):
        """Test still capture before start reports no video connection."""
        source = FrameSource(FakeCamera(), FakePermissionChecker(), dispatcher)
        error = source.capture_still().exception(timeout=2)
        source.shutdown()
        assert isinstance(error, NoVideoConnectionError)

    def test_denied_permission_is_signalled(self, dispatcher):
        """Test denied access posts status and remediation to the main context."""
        calls = []
        source = FrameSource(
            FakeCamera(), FakePermissionChecker(AuthorizationStatus.DENIED), dispatcher,
            on_permission_denied=lambda status, hint: calls.append((status, hint))
        )

        assert source.start() == AuthorizationStatus.DENIED
        assert not source.is_running
        assert calls == []

        dispatcher.run_pending()
        assert calls == [(AuthorizationStatus.DENIED, REMEDIATION_HINT)]
        source.shutdown()

    def test_restricted_permission_is_signalled(self, dispatcher):
        calls = []
        source = FrameSource(
            FakeCamera(), FakePermissionChecker(AuthorizationStatus.RESTRICTED), dispatcher,
            on_permission_denied=lambda status, hint: calls.append(status)
        )
        source.start()
        dispatcher.run_pending()
        assert calls == [AuthorizationStatus.RESTRICTED]

    def test_undetermined_permission_granted_starts_session(self, dispatcher):
        """Test an access request that is granted starts the session."""
        checker = FakePermissionChecker(AuthorizationStatus.NOT_DETERMINED, grant=True)
        source = FrameSource(FakeCamera(), checker, dispatcher)

        assert source.start() == AuthorizationStatus.NOT_DETERMINED
        assert checker.requests == 1
        assert source.is_running
        assert source.authorization == AuthorizationStatus.AUTHORIZED
        source.shutdown()

    def test_undetermined_permission_refused(self, dispatcher):
        """Test a refused access request is signalled as denied."""
        calls = []
        checker = FakePermissionChecker(AuthorizationStatus.NOT_DETERMINED, grant=False)
        source = FrameSource(
            FakeCamera(), checker, dispatcher,
            on_permission_denied=lambda status, hint: calls.append(status)
        )
        source.start()
        dispatcher.run_pending()
        assert not source.is_running
        assert calls == [AuthorizationStatus.DENIED]

    def test_slow_consumer_drops_stale_frames(self, dispatcher):
        """Test the camera keeps reading while a slow consumer lags behind."""
        camera = FakeCamera(read_delay=0.001)
        delivered = []

        def slow_consumer(frame):
            time.sleep(0.05)
            delivered.append(frame.index)

        source = FrameSource(camera, FakePermissionChecker(), dispatcher, on_frame=slow_consumer)
        source.start()
        assert wait_for(lambda: source.frames_dropped > 0 and len(delivered) >= 2)
        source.shutdown()

        assert camera.reads > len(delivered)
        # stale frames are skipped, so consecutive deliveries jump ahead
        assert any(b - a > 1 for a, b in zip(delivered, delivered[1:]))

    def test_consumer_exception_does_not_stop_session(self, dispatcher):
        calls = []

        def failing_consumer(frame):
            calls.append(frame.index)
            raise RuntimeError("consumer bug")

        source = FrameSource(FakeCamera(), FakePermissionChecker(), dispatcher, on_frame=failing_consumer)
        source.start()
        assert wait_for(lambda: len(calls) >= 3)
        assert source.is_running
        source.shutdown()

    def test_camera_failure_ends_session(self, dispatcher):
        """Test a camera that cannot open ends the session and reports it."""
        errors = []
        camera = FakeCamera(fail_init=True)
        source = FrameSource(
            camera, FakePermissionChecker(), dispatcher,
            on_session_error=errors.append
        )
        source.start()

        assert drain_until(dispatcher, lambda: errors)
        assert isinstance(errors[0], CameraInitError)
        assert not source.is_running
        assert camera.released >= 1
        source.shutdown()

    def test_start_twice_keeps_one_session(self, dispatcher):
        checker = FakePermissionChecker()
        source = FrameSource(FakeCamera(), checker, dispatcher)
        source.start()
        reader = source._reader
        source.start()
        assert source._reader is reader
        source.shutdown()

    def test_restart_does_not_deliver_frames_from_previous_session(self, dispatcher):
        """Test stop() discards the frame still waiting in the mailbox."""
        delivered = []

        def slow_consumer(frame):
            time.sleep(0.05)
            delivered.append(frame.index)

        source = FrameSource(FakeCamera(read_delay=0.001), FakePermissionChecker(), dispatcher, on_frame=slow_consumer)
        source.start()
        assert wait_for(lambda: source.frames_dropped > 0)
        source.stop()

        assert source._mailbox.empty()
        read_at_stop = source.stats()['frames_read']
        delivered_at_stop = len(delivered)

        source.start()
        assert wait_for(lambda: len(delivered) > delivered_at_stop)
        source.shutdown()

        assert delivered[delivered_at_stop] > read_at_stop

    def test_stats(self, dispatcher):
        source = FrameSource(FakeCamera(), FakePermissionChecker(), dispatcher, on_frame=lambda f: None)
        source.start()
        assert wait_for(lambda: source.stats()['frames_delivered'] > 0)
        stats = source.stats()
        source.shutdown()
        assert stats['running'] is True
        assert stats['authorization'] == 'authorized'
        assert stats['frames_read'] >= stats['frames_delivered']


# ============================================================================
# Layer 3: crop
# ============================================================================

def captured(image):
    return CapturedImage(image=image, timestamp="20260101_120000")


class TestApplyCrop:
    """Test rotation and cut-out."""

    def test_crop_without_rotation(self, sample_image):
        cut = apply_crop(sample_image, CropRect(10, 20, 100, 50), 0)
        assert cut.shape == (50, 100, 3)
        assert np.array_equal(cut, sample_image[20:70, 10:110])

    def test_rect_applies_to_rotated_image(self):
        """Test the rect is interpreted in the rotated image's coordinates."""
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        image[0, 0] = (10, 20, 30)

        cut = apply_crop(image, CropRect(470, 0, 10, 10), 90)

        assert cut.shape == (10, 10, 3)
        assert tuple(cut[0, 9]) == (10, 20, 30)

    def test_rect_outside_rotated_image(self, sample_image):
        """Test a rect valid before rotation is rejected after it."""
        apply_crop(sample_image, CropRect(0, 0, 600, 400), 0)
        with pytest.raises(CropError):
            apply_crop(sample_image, CropRect(0, 0, 600, 400), 90)

    @pytest.mark.parametrize("angle", [45, -90, 360])
    def test_invalid_angle(self, sample_image, angle):
        with pytest.raises(CropError):
            apply_crop(sample_image, CropRect(0, 0, 10, 10), angle)

    def test_empty_rect(self, sample_image):
        with pytest.raises(CropError):
            apply_crop(sample_image, CropRect(0, 0, 0, 10), 0)

    def test_rect_from_bad_values(self):
        with pytest.raises(CropError):
            CropRect.from_sequence([0, 0, "wide", 10])
        with pytest.raises(CropError):
            CropRect.from_sequence([0, 0, 10])

    @pytest.mark.parametrize("values", [5, "0,0,10,10", {"x": 0}, [0, 0, float('inf'), 10], [0, 0, 10, float('nan')]])
    def test_rect_from_malformed_answers(self, values):
        """Test scalars, strings, mappings and non-finite numbers are rejected."""
        with pytest.raises(CropError):
            CropRect.from_sequence(values)


class TestWebCropCollaborator:
    """Test the browser-driven crop step."""

    def test_submit_resolves_with_cropped_image(self, sample_image):
        crop = WebCropCollaborator()
        future = crop.request_crop(captured(sample_image))
        assert crop.has_pending

        cropped = crop.submit([100, 50, 200, 200])

        assert not crop.has_pending
        assert future.result(timeout=0) is cropped
        assert cropped.image.shape == (200, 200, 3)
        assert cropped.rect.to_list() == [100, 50, 200, 200]
        assert cropped.metadata['aspect_ratio'] == 'square'

    def test_square_tolerance(self, sample_image):
        """Test a rect within 2 px of square is accepted."""
        crop = WebCropCollaborator()
        crop.request_crop(captured(sample_image))
        assert crop.submit([0, 0, 100, 102]).image.shape == (102, 100, 3)

    def test_non_square_keeps_request_pending(self, sample_image):
        """Test an invalid answer can be corrected."""
        crop = WebCropCollaborator()
        future = crop.request_crop(captured(sample_image))

        with pytest.raises(CropError):
            crop.submit([0, 0, 200, 100])

        assert crop.has_pending
        assert not future.done()
        crop.submit([0, 0, 100, 100])
        assert future.done()

    def test_free_aspect_accepts_any_rect(self, sample_image):
        crop = WebCropCollaborator()
        crop.request_crop(captured(sample_image), AspectRatio.FREE)
        assert crop.submit([0, 0, 200, 100]).image.shape == (100, 200, 3)

    def test_cancel_resolves_with_cancelled(self, sample_image):
        crop = WebCropCollaborator()
        future = crop.request_crop(captured(sample_image))
        assert crop.cancel() is True
        assert isinstance(future.result(timeout=0), CropCancelled)
        assert crop.cancel() is False

    def test_submit_without_request(self):
        with pytest.raises(CropError):
            WebCropCollaborator().submit([0, 0, 10, 10])

    def test_new_request_cancels_stale_one(self, sample_image):
        crop = WebCropCollaborator()
        first = crop.request_crop(captured(sample_image))
        second = crop.request_crop(captured(sample_image))
        assert isinstance(first.result(timeout=0), CropCancelled)
        assert not second.done()


# ============================================================================
# Layer 4: upload
# ============================================================================

@pytest.fixture
def cropped(sample_image):
    return CroppedImage(image=sample_image[:100, :100].copy(), rect=CropRect(0, 0, 100, 100), angle=0)


class TestImageUploader:
    """Test the single-attempt upload."""

    def test_success(self, upload_http, cropped):
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        outcome = uploader.upload_sync(cropped)
        uploader.close()

        assert outcome.success
        assert outcome.message == "Image uploaded successfully"
        assert outcome.status_code == 200

    def test_request_shape(self, upload_http, cropped):
        """Test one POST with a JPEG body and content type."""
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        uploader.upload_sync(cropped)
        uploader.close()

        upload_http.post.assert_called_once()
        args, kwargs = upload_http.post.call_args
        assert args[0] == UPLOAD_URL
        assert kwargs['headers']['Content-Type'] == CONTENT_TYPE == "image/jpeg"
        assert kwargs['data'][:2] == b'\xff\xd8'
        assert kwargs['timeout'] is None

    def test_not_found_is_server_error(self, upload_http, cropped):
        upload_http.post.return_value = MagicMock(status_code=404, content=b'not found')
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        outcome = uploader.upload_sync(cropped)
        uploader.close()

        assert not outcome.success
        assert isinstance(outcome.error, ServerError)
        assert outcome.error.status_code == 404
        assert outcome.status_code == 404

    def test_other_2xx_is_server_error(self, upload_http, cropped):
        """Test only 200 counts as success."""
        upload_http.post.return_value = MagicMock(status_code=201, content=b'created')
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        outcome = uploader.upload_sync(cropped)
        uploader.close()
        assert isinstance(outcome.error, ServerError)

    def test_empty_body_is_invalid_response(self, upload_http, cropped):
        upload_http.post.return_value = MagicMock(status_code=200, content=b'')
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        outcome = uploader.upload_sync(cropped)
        uploader.close()
        assert isinstance(outcome.error, InvalidResponseError)

    def test_network_failure_is_transport_error(self, upload_http, cropped):
        upload_http.post.side_effect = requests.ConnectionError("connection refused")
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        outcome = uploader.upload_sync(cropped)
        uploader.close()

        assert isinstance(outcome.error, TransportError)
        assert upload_http.post.call_count == 1

    def test_empty_image_is_encoding_error(self, upload_http):
        """Test encoding failure aborts before any request."""
        empty = CroppedImage(image=np.zeros((0, 0, 3), dtype=np.uint8), rect=CropRect(0, 0, 0, 0), angle=0)
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        outcome = uploader.upload_sync(empty)
        uploader.close()

        assert isinstance(outcome.error, EncodingError)
        upload_http.post.assert_not_called()

    @pytest.mark.parametrize("url", ["", None, "ftp://upload.test/photos", "not a url"])
    def test_invalid_endpoint(self, url):
        with pytest.raises(InvalidEndpointError):
            ImageUploader(url)

    def test_completion_runs_on_main_context(self, upload_http, cropped):
        """Test the outcome is delivered through the dispatcher."""
        dispatcher = MainThreadDispatcher()
        outcomes = []
        uploader = ImageUploader(UPLOAD_URL, dispatcher=dispatcher, session=upload_http)

        future = uploader.upload(cropped, completion=outcomes.append)
        assert future.result(timeout=2).success
        assert outcomes == []

        assert drain_until(dispatcher, lambda: outcomes)
        assert outcomes[0].success
        uploader.close()

    def test_completion_requires_dispatcher(self, upload_http, cropped):
        uploader = ImageUploader(UPLOAD_URL, session=upload_http)
        with pytest.raises(ValueError):
            uploader.upload(cropped, completion=lambda outcome: None)
        uploader.close()

    def test_session_does_not_retry(self):
        session = create_upload_session()
        assert session.get_adapter(UPLOAD_URL).max_retries.total == 0
        session.close()

    def test_outcome_serializes(self):
        assert UploadOutcome.failed(ServerError(500)).to_dict()['error_code'] == 'SERVER_ERROR'
        assert UploadOutcome.succeeded("ok").to_dict() == {'success': True, 'message': 'ok', 'status_code': 200}


# ============================================================================
# Capture pipeline
# ============================================================================

class StubFrameSource:
    def __init__(self):
        self.futures = []

    def capture_still(self):
        future = Future()
        self.futures.append(future)
        return future


class StubUploader:
    def __init__(self, dispatcher):
        self.dispatcher = dispatcher
        self.uploads = []

    def upload(self, cropped, completion=None):
        self.uploads.append((cropped, completion))

    def finish(self, outcome):
        _, completion = self.uploads[-1]
        self.dispatcher.post(completion, outcome)


@pytest.fixture
def rig(dispatcher):
    gate = CaptureGate()
    source = StubFrameSource()
    crop = WebCropCollaborator()
    uploader = StubUploader(dispatcher)
    pipeline = CapturePipeline(gate, source, crop, uploader, dispatcher)
    return SimpleNamespace(
        gate=gate, source=source, crop=crop, uploader=uploader,
        pipeline=pipeline, dispatcher=dispatcher, results=[]
    )


class TestCapturePipeline:
    """Test the capture state machine."""

    def test_trigger_with_gate_closed_is_noop(self, rig):
        """Test nothing happens while the subject looks away."""
        assert rig.pipeline.trigger(rig.results.append) == TriggerResult.NOT_ALIGNED
        assert rig.pipeline.state == PipelineState.AWAITING_ALIGNMENT
        assert rig.source.futures == []
        assert rig.dispatcher.run_pending() == 0
        assert rig.results == []

    def test_trigger_with_gate_open_starts_capture(self, rig):
        rig.gate.set(True)
        assert rig.pipeline.trigger() == TriggerResult.STARTED
        assert rig.pipeline.state == PipelineState.CAPTURING
        assert len(rig.source.futures) == 1

    def test_trigger_reads_gate_once(self, dispatcher):
        gate = MagicMock()
        gate.get.return_value = True
        pipeline = CapturePipeline(gate, StubFrameSource(), WebCropCollaborator(), StubUploader(dispatcher), dispatcher)
        gate.reset_mock()
        pipeline.trigger()
        assert gate.get.call_count == 1

    def test_trigger_while_busy_is_dropped(self, rig):
        """Test at most one attempt is in flight."""
        rig.gate.set(True)
        rig.pipeline.trigger()
        assert rig.pipeline.trigger() == TriggerResult.BUSY
        assert len(rig.source.futures) == 1

    def test_full_attempt_reports_upload_success(self, rig, sample_image):
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)

        rig.source.futures[0].set_result(captured(sample_image))
        rig.dispatcher.run_pending()
        assert rig.pipeline.state == PipelineState.CROPPING
        assert rig.crop.pending_request().aspect_ratio == AspectRatio.SQUARE

        rig.crop.submit([0, 0, 100, 100])
        rig.dispatcher.run_pending()
        assert rig.pipeline.state == PipelineState.UPLOADING
        assert rig.uploader.uploads[0][0].image.shape == (100, 100, 3)
        assert rig.results == []

        rig.uploader.finish(UploadOutcome.succeeded(ImageUploader.SUCCESS_MESSAGE))
        rig.dispatcher.run_pending()
        assert rig.pipeline.state == PipelineState.IDLE
        assert len(rig.results) == 1
        assert rig.results[0].success
        assert rig.results[0].message == "Image uploaded successfully"
        assert rig.pipeline.last_result is rig.results[0]

    def test_cancelled_crop_returns_to_idle_without_upload(self, rig, sample_image):
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)
        rig.source.futures[0].set_result(captured(sample_image))
        rig.dispatcher.run_pending()

        rig.crop.cancel()
        rig.dispatcher.run_pending()

        assert rig.pipeline.state == PipelineState.IDLE
        assert rig.uploader.uploads == []
        assert rig.results == []
        assert rig.pipeline.trigger() == TriggerResult.STARTED

    def test_capture_failure_is_reported(self, rig):
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)
        rig.source.futures[0].set_exception(NoVideoConnectionError())
        rig.dispatcher.run_pending()

        assert rig.pipeline.state == PipelineState.IDLE
        assert rig.results[0].stage == "capture"
        assert rig.results[0].error.error_code == "NO_VIDEO_CONNECTION"
        assert not rig.crop.has_pending

    def test_unexpected_capture_exception_is_wrapped(self, rig):
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)
        rig.source.futures[0].set_exception(RuntimeError("device vanished"))
        rig.dispatcher.run_pending()

        error = rig.results[0].error
        assert isinstance(error, CaptureError)
        assert error.error_code == "CAPTURE_FAILED"

    def test_upload_failure_is_reported(self, rig, sample_image):
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)
        rig.source.futures[0].set_result(captured(sample_image))
        rig.dispatcher.run_pending()
        rig.crop.submit([0, 0, 50, 50])
        rig.dispatcher.run_pending()

        rig.uploader.finish(UploadOutcome.failed(ServerError(404)))
        rig.dispatcher.run_pending()

        result = rig.results[0]
        assert not result.success
        assert result.stage == "upload"
        assert result.error.status_code == 404
        assert result.to_dict()['error']['error_code'] == 'SERVER_ERROR'

    def test_gate_changes_reflect_while_ready(self, rig):
        rig.pipeline.on_gate_changed(False)
        assert rig.pipeline.state == PipelineState.AWAITING_ALIGNMENT
        rig.pipeline.on_gate_changed(True)
        assert rig.pipeline.state == PipelineState.IDLE

    def test_gate_changes_ignored_during_attempt(self, rig):
        rig.gate.set(True)
        rig.pipeline.trigger()
        rig.pipeline.on_gate_changed(False)
        assert rig.pipeline.state == PipelineState.CAPTURING

    def test_trigger_from_awaiting_alignment(self, rig):
        """Test the gate value, not the reflected state, decides the trigger."""
        rig.pipeline.on_gate_changed(False)
        assert rig.pipeline.trigger() == TriggerResult.NOT_ALIGNED
        assert rig.pipeline.state == PipelineState.AWAITING_ALIGNMENT

        rig.gate.set(True)
        assert rig.pipeline.trigger() == TriggerResult.STARTED

    def test_gate_flip_after_trigger_does_not_abort(self, rig, sample_image):
        """Test an attempt runs to the end once the gate was read open."""
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)
        rig.gate.set(False)

        rig.source.futures[0].set_result(captured(sample_image))
        rig.dispatcher.run_pending()
        assert rig.pipeline.state == PipelineState.CROPPING

    def test_ready_state_follows_gate_at_start(self, dispatcher):
        """Test a new pipeline reflects the gate it is given."""
        closed = CapturePipeline(CaptureGate(), StubFrameSource(), WebCropCollaborator(), StubUploader(dispatcher), dispatcher)
        opened = CapturePipeline(CaptureGate(initial=True), StubFrameSource(), WebCropCollaborator(), StubUploader(dispatcher), dispatcher)
        assert closed.state == PipelineState.AWAITING_ALIGNMENT
        assert opened.state == PipelineState.IDLE

    def test_cancel_with_gate_closed_returns_to_awaiting(self, rig, sample_image):
        """Test the ready state after an attempt matches the gate, not the last reflection."""
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)
        rig.gate.set(False)
        rig.source.futures[0].set_result(captured(sample_image))
        rig.dispatcher.run_pending()

        rig.crop.cancel()
        rig.dispatcher.run_pending()

        assert rig.pipeline.state == PipelineState.AWAITING_ALIGNMENT

    def test_failure_with_gate_closed_returns_to_awaiting(self, rig):
        rig.gate.set(True)
        rig.pipeline.trigger(rig.results.append)
        rig.gate.set(False)
        rig.source.futures[0].set_exception(NoVideoConnectionError())
        rig.dispatcher.run_pending()

        assert rig.pipeline.state == PipelineState.AWAITING_ALIGNMENT
        assert rig.results[0].stage == "capture"


class TestUploadThroughPipeline:
    """Test the pipeline with the real uploader."""

    def test_rejected_upload(self, dispatcher, upload_http, sample_image):
        upload_http.post.return_value = MagicMock(status_code=404, content=b'')
        gate = CaptureGate(initial=True)
        source = StubFrameSource()
        crop = WebCropCollaborator()
        uploader = ImageUploader(UPLOAD_URL, dispatcher=dispatcher, session=upload_http)
        pipeline = CapturePipeline(gate, source, crop, uploader, dispatcher)
        results = []

        pipeline.trigger(results.append)
        source.futures[0].set_result(captured(sample_image))
        dispatcher.run_pending()
        crop.submit([10, 10, 64, 64])

        assert drain_until(dispatcher, lambda: results)
        uploader.close()

        assert pipeline.state == PipelineState.IDLE
        assert isinstance(results[0].error, ServerError)
        assert results[0].error.status_code == 404


# ============================================================================
# Errors, config, dispatcher
# ============================================================================

class TestErrorHandling:
    """Test error serialization."""

    def test_known_error_to_dict(self):
        data = handle_error(ServerError(503))
        assert data['success'] is False
        assert data['error_code'] == 'SERVER_ERROR'
        assert data['details']['status_code'] == 503

    def test_unexpected_error(self):
        data = handle_error(KeyError("boom"))
        assert data['error_code'] == 'UNEXPECTED_ERROR'
        assert data['details']['error_type'] == 'KeyError'

    def test_hierarchy(self):
        assert issubclass(NoVideoConnectionError, CaptureError)
        assert issubclass(CropError, GazeCaptureError)


class TestConfig:
    """Test environment configuration."""

    def test_defaults(self, monkeypatch):
        for name in ("UPLOAD_URL", "ALIGNMENT_THRESHOLD", "UPLOAD_TIMEOUT", "PORT"):
            monkeypatch.delenv(name, raising=False)
        config = ServiceConfig.from_env()
        assert config.alignment.threshold == 0.05
        assert config.upload.endpoint_url == ""
        assert config.upload.timeout is None
        assert config.upload.jpeg_quality == 80
        assert config.port == 5000

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("UPLOAD_URL", UPLOAD_URL)
        monkeypatch.setenv("ALIGNMENT_THRESHOLD", "0.08")
        monkeypatch.setenv("UPLOAD_TIMEOUT", "15")
        monkeypatch.setenv("CAMERA_ORIENTATION", "90")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        config = ServiceConfig.from_env()
        assert config.upload.endpoint_url == UPLOAD_URL
        assert config.alignment.threshold == 0.08
        assert config.upload.timeout == 15.0
        assert config.camera.device_orientation == 90
        assert config.log_level == "DEBUG"


class TestDispatcher:
    """Test the main-context dispatcher."""

    def test_runs_in_order(self, dispatcher):
        calls = []
        for i in range(3):
            dispatcher.post(calls.append, i)
        assert dispatcher.run_pending() == 3
        assert calls == [0, 1, 2]

    def test_failing_callback_does_not_block_others(self, dispatcher):
        calls = []
        dispatcher.post(lambda: 1 / 0)
        dispatcher.post(calls.append, "after")
        dispatcher.run_pending()
        assert calls == ["after"]

    def test_dedicated_thread(self):
        dispatcher = MainThreadDispatcher()
        seen = []
        dispatcher.start()
        dispatcher.post(lambda: seen.append(dispatcher.is_main_context()))
        assert wait_for(lambda: seen)
        dispatcher.stop()
        assert seen == [True]
        assert not dispatcher.is_main_context()


# ============================================================================
# Flask application
# ============================================================================

class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'


class TestCameraEndpoints:
    """Test camera session endpoints."""

    def test_start_and_stop_camera(self, client, capture_session):
        response = client.post('/start_camera')
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['permission'] == 'authorized'
        assert capture_session.frame_source.is_running

        response = client.post('/stop_camera')
        assert json.loads(response.data)['success'] is True
        assert not capture_session.frame_source.is_running

    def test_denied_permission_reports_remediation(self, client, capture_session):
        capture_session.frame_source.permission_checker.status = AuthorizationStatus.DENIED

        data = json.loads(client.post('/start_camera').data)
        assert data['success'] is False
        assert data['error_code'] == 'CAMERA_PERMISSION_REQUIRED'
        assert data['remediation'] == REMEDIATION_HINT

        capture_session.dispatcher.run_pending()
        data = json.loads(client.get('/permission').data)
        assert data['status'] == 'denied'
        assert data['authorized'] is False
        assert data['remediation'] == REMEDIATION_HINT
        assert data['error']['details']['status'] == 'denied'

    def test_start_camera_with_unloadable_model(self, client, capture_session, tmp_path):
        """Test a landmark model that fails to load leaves the camera running."""
        model = tmp_path / "face_landmarker.task"
        model.write_bytes(b"not a model")
        capture_session.detector = MediaPipeLandmarkDetector(model_path=str(model))

        with patch.dict(sys.modules, broken_mediapipe_modules(RuntimeError("Unable to open zip archive"))):
            response = client.post('/start_camera')

        assert response.status_code == 200
        assert json.loads(response.data)['success'] is True
        assert capture_session.frame_source.is_running
        assert not capture_session.detector.is_loaded

        client.post('/stop_camera')


class TestCaptureEndpoints:
    """Test gate, capture and crop endpoints."""

    def test_capture_with_gate_closed(self, client):
        response = client.post('/capture')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['accepted'] is False
        assert data['result'] == 'not_aligned'

    def test_gate_state(self, client):
        data = json.loads(client.get('/gate').data)
        assert data['looking_straight'] is False
        assert data['pipeline_state'] == 'awaiting_alignment'
        assert data['gate_version'] == 0

    def test_crop_without_pending_request(self, client):
        assert client.get('/crop/image').status_code == 404
        assert client.post('/crop', json={'cancel': True}).status_code == 404

    def test_crop_requires_json(self, client):
        response = client.post('/crop', data='{"rect": [0, 0', content_type='application/json')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_REQUEST'

    def test_gate_reports_version(self, client, capture_session):
        capture_session.detector.observations = [face(0.5, 0.51)]
        capture_session.monitor.on_frame(blank_frame())

        data = json.loads(client.get('/gate').data)
        assert data['looking_straight'] is True
        assert data['gate_version'] == 1
        assert json.loads(client.get('/api/status').data)['gate_version'] == 1

    @pytest.mark.parametrize("body", [
        {'rect': 5},
        {'rect': "0,0,10,10"},
        {'rect': [0, 0, 'wide', 10]},
    ])
    def test_crop_rejects_malformed_rect(self, client, capture_session, sample_image, body):
        capture_session.crop.request_crop(CapturedImage(image=sample_image, timestamp="20260101_120000"))

        response = client.post('/crop', json=body)
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'CROP_INVALID'
        assert capture_session.crop.has_pending

    def test_crop_rejects_overflowing_rect(self, client, capture_session, sample_image):
        """Test JSON numbers too large for a float are refused, not a server error."""
        capture_session.crop.request_crop(CapturedImage(image=sample_image, timestamp="20260101_120000"))

        response = client.post('/crop', data='{"rect": [0, 0, 1e400, 1e400]}', content_type='application/json')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'CROP_INVALID'
        assert capture_session.crop.has_pending

    def test_status(self, client):
        data = json.loads(client.get('/api/status').data)
        assert data['success'] is True
        assert data['looking_straight'] is False
        assert data['last_result'] is None
        assert data['gate_version'] == 0

    def test_full_capture_flow(self, client, capture_session, upload_http):
        """Test start, gaze, capture, crop and upload end to end."""
        capture_session.detector.observations = [face(0.5, 0.51)]
        client.post('/start_camera')
        assert wait_for(capture_session.gate.get)
        capture_session.dispatcher.run_pending()

        response = client.post('/capture')
        assert response.status_code == 202
        assert json.loads(response.data)['result'] == 'started'

        assert drain_until(capture_session.dispatcher, lambda: capture_session.crop.has_pending)

        response = client.get('/crop/image')
        assert response.status_code == 200
        assert response.content_type == 'image/jpeg'
        assert response.headers['X-Crop-Aspect-Ratio'] == 'square'

        response = client.post('/crop', json={'rect': [100, 100, 200, 150]})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'CROP_INVALID'

        response = client.post('/crop', json={'rect': [100, 50, 200, 200], 'angle': 0})
        assert response.status_code == 200
        assert json.loads(response.data)['size'] == [200, 200]

        assert drain_until(capture_session.dispatcher, lambda: capture_session.results)
        data = json.loads(client.get('/api/status').data)
        assert data['last_result']['success'] is True
        assert data['last_result']['message'] == "Image uploaded successfully"
        assert data['pipeline_state'] == 'idle'
        upload_http.post.assert_called_once()

        client.post('/stop_camera')
