"""
Layer 2 — Gaze Monitor
Frame consumer for the analysis thread: detect landmarks, evaluate
alignment, write the gate before the next frame is taken.
"""
import logging
from typing import Callable, Dict, Optional

from .evaluator import ALIGNMENT_THRESHOLD, AlignmentResult, apply_observations
from .gate import CaptureGate

logger = logging.getLogger(__name__)


class GazeMonitor:
    """
    Runs on the frame-analysis thread.

    Detection failures are logged and the frame is skipped without touching
    the gate. Gate changes are reported to `on_gate_changed` on the main
    context.
    """

    def __init__(
        self,
        detector,
        gate: CaptureGate,
        dispatcher=None,
        on_gate_changed: Optional[Callable[[bool], None]] = None,
        threshold: float = ALIGNMENT_THRESHOLD,
    ):
        self.detector = detector
        self.gate = gate
        self.dispatcher = dispatcher
        self.on_gate_changed = on_gate_changed
        self.threshold = threshold

        self.frames_processed = 0
        self.detection_errors = 0
        self.last_result: Optional[AlignmentResult] = None
        self.last_face_count = 0

    def on_frame(self, frame):
        try:
            observations = self.detector.detect(frame)
        except Exception as e:
            self.detection_errors += 1
            if self.detection_errors == 1 or self.detection_errors % 100 == 0:
                logger.warning(f"Landmark detection failed on frame {frame.index} "
                               f"({self.detection_errors} failures so far): {e}")
            return

        before = self.gate.get()
        result = apply_observations(observations, self.gate, self.threshold)
        after = self.gate.get()

        self.frames_processed += 1
        self.last_face_count = len(observations)
        if result is not None:
            self.last_result = result

        if after != before:
            logger.debug(f"Gate {'opened' if after else 'closed'} on frame {frame.index}")
            if self.on_gate_changed is not None and self.dispatcher is not None:
                self.dispatcher.post(self.on_gate_changed, after)

    def stats(self) -> Dict:
        return {
            'frames_processed': self.frames_processed,
            'detection_errors': self.detection_errors,
            'faces_last_frame': self.last_face_count,
            'last_result': self.last_result.to_dict() if self.last_result else None,
        }
