"""
Layer 2 — Alignment
Landmark detection, eye-level heuristic and the shared capture gate.
"""
from .detector import (
    FaceObservation,
    LandmarkDetector,
    MediaPipeLandmarkDetector,
    LEFT_EYE,
    RIGHT_EYE,
)
from .evaluator import (
    ALIGNMENT_THRESHOLD,
    AlignmentResult,
    apply_observations,
    evaluate_eyes,
    evaluate_observation,
)
from .gate import CaptureGate
from .monitor import GazeMonitor

__all__ = [
    'ALIGNMENT_THRESHOLD',
    'AlignmentResult',
    'CaptureGate',
    'FaceObservation',
    'GazeMonitor',
    'LEFT_EYE',
    'LandmarkDetector',
    'MediaPipeLandmarkDetector',
    'RIGHT_EYE',
    'apply_observations',
    'evaluate_eyes',
    'evaluate_observation',
]
