"""
Layer 2 — Landmark Detection
Per-frame face landmark extraction reduced to normalized eye point sets.
"""
import cv2
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from error_handlers import DetectionError

logger = logging.getLogger(__name__)

Point = Tuple[float, float]

LEFT_EYE = "left_eye"
RIGHT_EYE = "right_eye"


@dataclass
class FaceObservation:
    """Landmark groups of one detected face, normalized to [0, 1] image space."""
    landmarks: Dict[str, List[Point]] = field(default_factory=dict)
    confidence: Optional[float] = None

    def first_point(self, group: str) -> Optional[Point]:
        """First point of a landmark group, or None if the group is absent or empty."""
        points = self.landmarks.get(group)
        if not points:
            return None
        return points[0]

    @property
    def left_eye(self) -> Optional[Point]:
        return self.first_point(LEFT_EYE)

    @property
    def right_eye(self) -> Optional[Point]:
        return self.first_point(RIGHT_EYE)


class LandmarkDetector:
    """Detector contract: detect(frame) -> list of FaceObservation; may raise."""

    def detect(self, frame) -> List[FaceObservation]:
        raise NotImplementedError

    def close(self):
        pass


class MediaPipeLandmarkDetector(LandmarkDetector):
    """
    MediaPipe FaceLandmarker adapter.

    Eye contours follow the FaceMesh topology; each list starts at the outer
    eye corner so the first point of both eyes sits on the same facial line.
    """

    LEFT_EYE_INDICES = [263, 249, 390, 373, 374, 380, 381, 382, 362, 398, 384, 385, 386, 387, 388, 466]
    RIGHT_EYE_INDICES = [33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246]

    def __init__(self, model_path: str = "models/face_landmarker.task", max_faces: int = 2):
        self.model_path = model_path
        self.max_faces = max_faces
        self._landmarker = None
        self._mp = None

    @property
    def is_loaded(self) -> bool:
        return self._landmarker is not None

    def load(self) -> bool:
        """
        Load the FaceLandmarker model.

        Returns:
            bool: True if model loaded successfully
        """
        if self._landmarker is not None:
            return True

        model_path = Path(self.model_path)
        if not model_path.exists():
            logger.error(f"Landmark model not found: {model_path}")
            return False

        try:
            import mediapipe as mp
            from mediapipe.tasks import python as mp_python
            from mediapipe.tasks.python import vision
        except ImportError:
            logger.error("mediapipe package not installed. Run: pip install '.[mediapipe]'")
            return False

        try:
            options = vision.FaceLandmarkerOptions(
                base_options=mp_python.BaseOptions(model_asset_path=str(model_path)),
                running_mode=vision.RunningMode.IMAGE,
                num_faces=self.max_faces,
            )
            self._landmarker = vision.FaceLandmarker.create_from_options(options)
        except Exception as e:
            logger.error(f"Failed to load FaceLandmarker from {model_path}: {e}")
            self._landmarker = None
            return False

        self._mp = mp
        logger.info(f"FaceLandmarker loaded from {model_path} (max faces: {self.max_faces})")
        return True

    def detect(self, frame) -> List[FaceObservation]:
        if self._landmarker is None:
            raise DetectionError("landmark model not loaded")

        try:
            rgb = cv2.cvtColor(frame.image, cv2.COLOR_BGR2RGB)
            mp_image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb)
            result = self._landmarker.detect(mp_image)
        except Exception as e:
            raise DetectionError(e)

        observations = []
        for face in result.face_landmarks or []:
            observations.append(FaceObservation(landmarks={
                LEFT_EYE: [(face[i].x, face[i].y) for i in self.LEFT_EYE_INDICES],
                RIGHT_EYE: [(face[i].x, face[i].y) for i in self.RIGHT_EYE_INDICES],
            }))
        return observations

    def close(self):
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
            logger.info("FaceLandmarker closed")
