"""
Layer 1 — Frame Source
Owns the camera session: a continuous stream of analysis frames plus
on-demand full-resolution stills.

Threads:
- camera-reader: reads the device and keeps the latest raw frame
- frame-analysis: hands analysis frames to the consumer callback
Stills run on a worker executor and are returned as futures.
"""
import cv2
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

import numpy as np

from error_handlers import CaptureError, FrameCaptureError, NoVideoConnectionError
from .permissions import AuthorizationStatus, CameraPermissionChecker, REMEDIATION_HINT

logger = logging.getLogger(__name__)

_ROTATIONS = {
    0: None,
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


@dataclass
class Frame:
    """One analysis frame, already upright."""
    image: np.ndarray
    index: int
    timestamp: float
    rotation: int = 0  # Degrees applied to bring the raw frame upright

    @property
    def size(self):
        h, w = self.image.shape[:2]
        return w, h


@dataclass
class CapturedImage:
    """Full-resolution still, normalized to the portrait (upright) reference."""
    image: np.ndarray
    timestamp: str
    metadata: Dict = field(default_factory=dict)


def normalize_orientation(image: np.ndarray, rotation: int) -> np.ndarray:
    """
    Rotate a raw frame clockwise by `rotation` degrees so it is upright.

    Raises:
        ValueError: If rotation is not a multiple of 90
    """
    rotation = rotation % 360
    if rotation not in _ROTATIONS:
        raise ValueError(f"Unsupported rotation: {rotation}")
    code = _ROTATIONS[rotation]
    if code is None:
        return image
    return cv2.rotate(image, code)


def downscale(image: np.ndarray, max_width: int) -> np.ndarray:
    """Resize to max_width keeping aspect ratio; smaller images pass through."""
    h, w = image.shape[:2]
    if max_width <= 0 or w <= max_width:
        return image
    scale = max_width / float(w)
    return cv2.resize(image, (max_width, int(round(h * scale))), interpolation=cv2.INTER_AREA)


class FrameSource:
    """
    Camera session with a continuous analysis stream and still capture.

    `on_frame` is invoked on the frame-analysis thread, never on the main
    context. Delivery goes through a one-slot mailbox: when the consumer is
    slower than the camera, stale frames are replaced and counted as dropped.
    """

    MAX_CONSECUTIVE_READ_FAILURES = 30

    def __init__(
        self,
        camera,
        permission_checker: CameraPermissionChecker,
        dispatcher,
        on_frame: Optional[Callable[[Frame], None]] = None,
        on_permission_denied: Optional[Callable[[AuthorizationStatus, str], None]] = None,
        on_session_error: Optional[Callable[[CaptureError], None]] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        analysis_width: int = 640,
        device_orientation: int = 0,
    ):
        """
        Initialize frame source.

        Args:
            camera: Device wrapper exposing initialize/get_frame/is_opened/release
            permission_checker: Camera authorization capability
            dispatcher: Main-context dispatcher for permission and session signals
            on_frame: Consumer for analysis frames
            on_permission_denied: Main-context callback(status, remediation)
            on_session_error: Main-context callback for camera failures
            executor: Worker pool for still capture (own single worker if None)
            analysis_width: Width analysis frames are downscaled to
            device_orientation: Clockwise degrees that bring raw frames upright
        """
        self.camera = camera
        self.permission_checker = permission_checker
        self.dispatcher = dispatcher
        self.on_frame = on_frame
        self.on_permission_denied = on_permission_denied
        self.on_session_error = on_session_error
        self.analysis_width = analysis_width
        self.device_orientation = device_orientation % 360
        if self.device_orientation not in _ROTATIONS:
            raise ValueError(f"Unsupported device orientation: {device_orientation}")

        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="still-capture")
        self._owns_executor = executor is None

        self._lock = threading.Lock()
        self._frame_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._mailbox: "queue.Queue[Frame]" = queue.Queue(maxsize=1)
        self._reader: Optional[threading.Thread] = None
        self._analyzer: Optional[threading.Thread] = None
        self._running = False

        self._latest_raw: Optional[np.ndarray] = None
        self._frame_index = 0
        self.frames_delivered = 0
        self.frames_dropped = 0
        self.authorization: AuthorizationStatus = AuthorizationStatus.NOT_DETERMINED

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------
    def start(self) -> AuthorizationStatus:
        """
        Start the session without blocking the caller.

        Returns:
            AuthorizationStatus: Status observed when start() was called
        """
        if self._running:
            logger.debug("Frame source already running")
            return self.authorization

        status = self.permission_checker.authorization_status()
        self.authorization = status
        logger.info(f"Camera authorization status: {status.value}")

        if status == AuthorizationStatus.AUTHORIZED:
            self._start_session()
        elif status == AuthorizationStatus.NOT_DETERMINED:
            self.permission_checker.request_access(self._on_access_answer)
        else:
            self._signal_permission_denied(status)
        return status

    def _on_access_answer(self, granted: bool):
        if granted:
            self.authorization = AuthorizationStatus.AUTHORIZED
            self._start_session()
        else:
            self.authorization = AuthorizationStatus.DENIED
            self._signal_permission_denied(AuthorizationStatus.DENIED)

    def _signal_permission_denied(self, status: AuthorizationStatus):
        logger.warning(f"Camera permission required: {status.value}")
        if self.on_permission_denied is not None:
            self.dispatcher.post(self.on_permission_denied, status, REMEDIATION_HINT)

    def _start_session(self):
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stop_event.clear()
            self._reader = threading.Thread(target=self._read_loop, name="camera-reader", daemon=True)
            self._analyzer = threading.Thread(target=self._analysis_loop, name="frame-analysis", daemon=True)
            self._reader.start()
            self._analyzer.start()
        logger.info("Frame source session started")

    def stop(self, timeout: float = 2.0):
        """Stop both threads and release the camera."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            reader, analyzer = self._reader, self._analyzer
            self._reader = self._analyzer = None

        for thread in (reader, analyzer):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=timeout)

        self._drain_mailbox()
        self.camera.release()
        with self._frame_lock:
            self._latest_raw = None
        logger.info("Frame source session stopped")

    def shutdown(self):
        """Stop the session and the still-capture executor."""
        self.stop()
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # -------------------------------------------------
    # Background loops
    # -------------------------------------------------
    def _end_session(self, error: CaptureError):
        """Tear the session down from the reader thread after a camera failure."""
        with self._lock:
            self._running = False
            self._stop_event.set()
            self._reader = self._analyzer = None
        self.camera.release()
        self._drain_mailbox()
        with self._frame_lock:
            self._latest_raw = None
        if self.on_session_error is not None:
            self.dispatcher.post(self.on_session_error, error)

    def _read_loop(self):
        try:
            self.camera.initialize()
        except CaptureError as e:
            logger.error(f"Camera session failed to start: {e.message}")
            self._end_session(e)
            return

        failures = 0
        while not self._stop_event.is_set():
            try:
                raw = self.camera.get_frame()
            except FrameCaptureError as e:
                failures += 1
                if failures >= self.MAX_CONSECUTIVE_READ_FAILURES:
                    logger.error(f"Camera read failed {failures} times in a row, ending session")
                    self._end_session(e)
                    return
                time.sleep(0.01)
                continue
            except CaptureError as e:
                if self._stop_event.is_set():
                    return
                logger.error(f"Camera read stopped: {e.message}")
                self._end_session(e)
                return

            failures = 0
            with self._frame_lock:
                self._latest_raw = raw

            self._frame_index += 1
            analysis = normalize_orientation(downscale(raw, self.analysis_width), self.device_orientation)
            self._offer(Frame(
                image=analysis,
                index=self._frame_index,
                timestamp=time.time(),
                rotation=self.device_orientation,
            ))

    def _offer(self, frame: Frame):
        """Put into the one-slot mailbox, replacing a stale frame."""
        try:
            self._mailbox.put_nowait(frame)
            return
        except queue.Full:
            pass
        try:
            self._mailbox.get_nowait()
            self.frames_dropped += 1
        except queue.Empty:
            pass
        try:
            self._mailbox.put_nowait(frame)
        except queue.Full:
            self.frames_dropped += 1

    def _drain_mailbox(self):
        try:
            self._mailbox.get_nowait()
        except queue.Empty:
            pass

    def _analysis_loop(self):
        while not self._stop_event.is_set():
            try:
                frame = self._mailbox.get(timeout=0.1)
            except queue.Empty:
                continue
            if self.on_frame is None:
                continue
            try:
                self.on_frame(frame)
                self.frames_delivered += 1
            except Exception as e:
                logger.warning(f"Frame consumer failed on frame {frame.index}: {e}")

    # -------------------------------------------------
    # Still capture
    # -------------------------------------------------
    def capture_still(self) -> "Future[CapturedImage]":
        """
        Request one full-resolution still off the caller's context.

        Returns:
            Future resolving to CapturedImage, or failing with CaptureError
        """
        return self._executor.submit(self._capture_still)

    def _capture_still(self) -> CapturedImage:
        if not self._running or not self.camera.is_opened():
            raise NoVideoConnectionError(reason="Camera session is not running")

        with self._frame_lock:
            raw = None if self._latest_raw is None else self._latest_raw.copy()

        if raw is None:
            raise NoVideoConnectionError(reason="No frame received from camera yet")

        image = normalize_orientation(raw, self.device_orientation)
        h, w = image.shape[:2]
        logger.info(f"Still captured: {w}x{h}")
        return CapturedImage(
            image=image,
            timestamp=datetime.now().strftime("%Y%m%d_%H%M%S"),
            metadata={'size': (w, h), 'rotation': self.device_orientation},
        )

    def latest_preview(self) -> Optional[np.ndarray]:
        """Copy of the latest raw frame, upright, for preview rendering."""
        with self._frame_lock:
            raw = None if self._latest_raw is None else self._latest_raw.copy()
        if raw is None:
            return None
        return normalize_orientation(raw, self.device_orientation)

    def stats(self) -> Dict:
        return {
            'running': self._running,
            'authorization': self.authorization.value,
            'frames_read': self._frame_index,
            'frames_delivered': self.frames_delivered,
            'frames_dropped': self.frames_dropped,
        }
