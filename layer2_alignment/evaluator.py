"""
Layer 2 — Alignment Evaluator
Decides from the two eye positions whether the subject looks straight
at the camera: both eyes at (almost) the same normalized height.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from .detector import FaceObservation, Point

ALIGNMENT_THRESHOLD = 0.05


@dataclass(frozen=True)
class AlignmentResult:
    is_valid: bool
    is_aligned: bool = False
    eye_height_delta: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            'is_valid': self.is_valid,
            'is_aligned': self.is_aligned,
            'eye_height_delta': None if self.eye_height_delta is None else round(self.eye_height_delta, 4),
        }


INVALID = AlignmentResult(is_valid=False)


def _inside_unit_square(point: Point) -> bool:
    x, y = point
    return 0 < x < 1 and 0 < y < 1


def evaluate_eyes(
    left: Optional[Point],
    right: Optional[Point],
    threshold: float = ALIGNMENT_THRESHOLD
) -> AlignmentResult:
    """
    Evaluate two eye positions.

    Both points must lie strictly inside (0, 1) on both axes, otherwise
    the result is invalid. Aligned when |left.y - right.y| < threshold.
    """
    if left is None or right is None:
        return INVALID
    if not (_inside_unit_square(left) and _inside_unit_square(right)):
        return INVALID

    delta = abs(left[1] - right[1])
    return AlignmentResult(is_valid=True, is_aligned=delta < threshold, eye_height_delta=delta)


def evaluate_observation(observation: FaceObservation, threshold: float = ALIGNMENT_THRESHOLD) -> AlignmentResult:
    return evaluate_eyes(observation.left_eye, observation.right_eye, threshold)


def apply_observations(
    observations: Iterable[FaceObservation],
    gate,
    threshold: float = ALIGNMENT_THRESHOLD
) -> Optional[AlignmentResult]:
    """
    Write every valid observation's decision to the gate, in order.

    The last valid face of the frame therefore decides the gate. Invalid
    observations leave it untouched.

    Returns:
        The last valid AlignmentResult, or None if no observation was valid
    """
    last = None
    for observation in observations:
        result = evaluate_observation(observation, threshold)
        if not result.is_valid:
            continue
        gate.set(result.is_aligned)
        last = result
    return last
