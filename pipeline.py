"""
Capture Pipeline
Gated still capture -> manual crop -> upload, one attempt at a time.

    IDLE / AWAITING_ALIGNMENT --trigger, gate open--> CAPTURING
    CAPTURING --still ok--> CROPPING          --still failed--> ready (reported)
    CROPPING  --confirmed--> UPLOADING        --cancelled-->    ready (silent)
    UPLOADING --outcome--> ready (reported)

"ready" is IDLE when the gate is open, AWAITING_ALIGNMENT otherwise.

trigger() may be called from any request thread. Every completion from
the worker threads is posted to the main dispatcher before it touches the
state, so transitions after CAPTURING all happen on the main context.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from error_handlers import CaptureError, GazeCaptureError
from layer3_crop import AspectRatio, CropCancelled, CroppedImage

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    AWAITING_ALIGNMENT = "awaiting_alignment"
    CAPTURING = "capturing"
    CROPPING = "cropping"
    UPLOADING = "uploading"


READY_STATES = (PipelineState.IDLE, PipelineState.AWAITING_ALIGNMENT)


class TriggerResult(str, Enum):
    STARTED = "started"
    NOT_ALIGNED = "not_aligned"
    BUSY = "busy"


@dataclass
class PipelineResult:
    """Reported outcome of one capture attempt."""
    success: bool
    stage: str
    message: Optional[str] = None
    error: Optional[GazeCaptureError] = None
    timestamp: str = ""

    def to_dict(self) -> Dict:
        result = {
            'success': self.success,
            'stage': self.stage,
            'message': self.message,
            'timestamp': self.timestamp,
        }
        if self.error is not None:
            result['error'] = self.error.to_dict()
        return result


def _now() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


class CapturePipeline:
    """
    Capture state machine.

    The gate is read exactly once per trigger. A trigger outside
    IDLE/AWAITING_ALIGNMENT is dropped as busy; a trigger with the gate
    closed changes nothing.
    """

    def __init__(
        self,
        gate,
        frame_source,
        crop_collaborator,
        uploader,
        dispatcher,
        aspect_ratio: AspectRatio = AspectRatio.SQUARE,
    ):
        self.gate = gate
        self.frame_source = frame_source
        self.crop_collaborator = crop_collaborator
        self.uploader = uploader
        self.dispatcher = dispatcher
        self.aspect_ratio = aspect_ratio

        self._lock = threading.Lock()
        self._state = self._ready_state()
        self._completion: Optional[Callable[[PipelineResult], None]] = None
        self.last_result: Optional[PipelineResult] = None

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    def _ready_state(self) -> PipelineState:
        return PipelineState.IDLE if self.gate.get() else PipelineState.AWAITING_ALIGNMENT

    def _transition(self, new_state: PipelineState):
        # caller holds self._lock
        if new_state != self._state:
            logger.info(f"Pipeline {self._state.value} -> {new_state.value}")
            self._state = new_state

    # -------------------------------------------------
    # Inputs
    # -------------------------------------------------
    def on_gate_changed(self, aligned: bool):
        """Reflect the gate while no attempt is in flight (main context)."""
        with self._lock:
            if self._state in READY_STATES:
                self._transition(PipelineState.IDLE if aligned else PipelineState.AWAITING_ALIGNMENT)

    def trigger(self, completion: Optional[Callable[[PipelineResult], None]] = None) -> TriggerResult:
        """
        User capture request.

        Args:
            completion: Called on the main context with the PipelineResult
                of this attempt (not called when the crop is cancelled)
        """
        with self._lock:
            if self._state not in READY_STATES:
                logger.info(f"Capture request dropped: pipeline busy ({self._state.value})")
                return TriggerResult.BUSY

            if not self.gate.get():
                logger.info("Capture request ignored: subject not looking straight")
                return TriggerResult.NOT_ALIGNED

            self._transition(PipelineState.CAPTURING)
            self._completion = completion

        future = self.frame_source.capture_still()
        future.add_done_callback(lambda f: self.dispatcher.post(self._on_capture_done, f))
        return TriggerResult.STARTED

    # -------------------------------------------------
    # Stage completions (main context)
    # -------------------------------------------------
    def _on_capture_done(self, future):
        error = future.exception()
        if error is not None:
            if not isinstance(error, GazeCaptureError):
                error = CaptureError(
                    message=f"Still capture failed: {error}",
                    error_code="CAPTURE_FAILED",
                    details={'error_type': type(error).__name__}
                )
            logger.error(f"Still capture failed: {error.message}")
            self._finish(PipelineResult(success=False, stage="capture", error=error, timestamp=_now()))
            return

        captured = future.result()
        with self._lock:
            self._transition(PipelineState.CROPPING)

        try:
            crop_future = self.crop_collaborator.request_crop(captured, self.aspect_ratio)
        except GazeCaptureError as e:
            self._finish(PipelineResult(success=False, stage="crop", error=e, timestamp=_now()))
            return
        crop_future.add_done_callback(lambda f: self.dispatcher.post(self._on_crop_done, f))

    def _on_crop_done(self, future):
        error = future.exception()
        if error is not None:
            logger.error(f"Crop step failed: {error}")
            if not isinstance(error, GazeCaptureError):
                error = GazeCaptureError(f"Crop step failed: {error}", "CROP_FAILED")
            self._finish(PipelineResult(success=False, stage="crop", error=error, timestamp=_now()))
            return

        outcome = future.result()
        if isinstance(outcome, CropCancelled):
            logger.info("Crop cancelled, capture discarded")
            with self._lock:
                self._completion = None
                self._transition(self._ready_state())
            return

        if not isinstance(outcome, CroppedImage):
            error = GazeCaptureError(f"Unexpected crop outcome: {type(outcome).__name__}", "CROP_FAILED")
            self._finish(PipelineResult(success=False, stage="crop", error=error, timestamp=_now()))
            return

        with self._lock:
            self._transition(PipelineState.UPLOADING)
        self.uploader.upload(outcome, completion=self._on_upload_done)

    def _on_upload_done(self, outcome):
        self._finish(PipelineResult(
            success=outcome.success,
            stage="upload",
            message=outcome.message,
            error=outcome.error,
            timestamp=_now(),
        ))

    def _finish(self, result: PipelineResult):
        with self._lock:
            completion, self._completion = self._completion, None
            self.last_result = result
            self._transition(self._ready_state())

        if result.success:
            logger.info(f"Capture attempt finished: {result.message}")
        else:
            logger.warning(f"Capture attempt failed at {result.stage}: {result.error.error_code}")

        if completion is not None:
            completion(result)
