"""
Layer 3 — Crop
Human-in-the-loop crop step between still capture and upload.

Contract: request_crop(image, aspect_ratio) returns a future resolving to
either CropCancelled or CroppedImage (rect and rotation already applied).
"""
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Union

import numpy as np

from error_handlers import CropError
from layer1_capture.frame_source import CapturedImage, normalize_orientation

logger = logging.getLogger(__name__)

VALID_ANGLES = (0, 90, 180, 270)


class AspectRatio(str, Enum):
    SQUARE = "square"
    FREE = "free"

    @property
    def ratio(self) -> Optional[float]:
        return 1.0 if self is AspectRatio.SQUARE else None


@dataclass(frozen=True)
class CropRect:
    """Pixel rectangle in the rotated image."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_sequence(cls, values: Sequence) -> "CropRect":
        if not isinstance(values, (list, tuple)) or len(values) != 4:
            raise CropError("rect must be [x, y, width, height]")
        try:
            x, y, w, h = (int(round(float(v))) for v in values)
        except (TypeError, ValueError, OverflowError):
            raise CropError(f"rect values must be numbers: {values}")
        return cls(x, y, w, h)

    def to_list(self):
        return [self.x, self.y, self.width, self.height]


@dataclass
class CropCancelled:
    """User dismissed the crop; the capture is discarded."""
    timestamp: str = ""


@dataclass
class CroppedImage:
    image: np.ndarray
    rect: CropRect
    angle: int
    timestamp: str = ""
    metadata: dict = field(default_factory=dict)


CropOutcome = Union[CropCancelled, CroppedImage]


def check_aspect_ratio(rect: CropRect, aspect_ratio: AspectRatio, tolerance_px: int = 2):
    """Raise CropError when the rect violates the aspect constraint."""
    target = aspect_ratio.ratio
    if target is None:
        return
    expected_height = rect.width / target
    if abs(rect.height - expected_height) > tolerance_px:
        raise CropError(f"rect {rect.width}x{rect.height} is not {aspect_ratio.value}")


def apply_crop(image: np.ndarray, rect: CropRect, angle: int) -> np.ndarray:
    """
    Rotate clockwise by `angle`, then cut `rect` out of the rotated image.

    Raises:
        CropError: Unsupported angle or rect outside the rotated image
    """
    if angle not in VALID_ANGLES:
        raise CropError(f"angle must be one of {VALID_ANGLES}, got {angle}")

    rotated = normalize_orientation(image, angle)
    h, w = rotated.shape[:2]

    if rect.width <= 0 or rect.height <= 0:
        raise CropError("rect must have a positive size")
    if rect.x < 0 or rect.y < 0 or rect.x + rect.width > w or rect.y + rect.height > h:
        raise CropError(f"rect {rect.to_list()} outside image {w}x{h}")

    return rotated[rect.y:rect.y + rect.height, rect.x:rect.x + rect.width].copy()


class CropCollaborator:
    def request_crop(self, captured: CapturedImage, aspect_ratio: AspectRatio = AspectRatio.SQUARE) -> "Future[CropOutcome]":
        raise NotImplementedError


class _PendingCrop:
    def __init__(self, captured: CapturedImage, aspect_ratio: AspectRatio):
        self.captured = captured
        self.aspect_ratio = aspect_ratio
        self.future: "Future[CropOutcome]" = Future()


class WebCropCollaborator(CropCollaborator):
    """
    Holds one pending crop request until the browser answers.

    The browser fetches the image, lets the user pick a region and either
    submits it or cancels. An invalid submission raises CropError and keeps
    the request pending so the user can try again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Optional[_PendingCrop] = None

    def request_crop(self, captured: CapturedImage, aspect_ratio: AspectRatio = AspectRatio.SQUARE) -> "Future[CropOutcome]":
        pending = _PendingCrop(captured, aspect_ratio)
        with self._lock:
            stale, self._pending = self._pending, pending
        if stale is not None:
            logger.warning("Replacing an unanswered crop request")
            stale.future.set_result(CropCancelled(timestamp=stale.captured.timestamp))
        logger.info(f"Crop requested ({aspect_ratio.value}) for capture {captured.timestamp}")
        return pending.future

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def pending_request(self) -> Optional[_PendingCrop]:
        with self._lock:
            return self._pending

    def submit(self, rect_values: Sequence, angle: int = 0) -> CroppedImage:
        """
        Answer the pending request with a crop.

        Raises:
            CropError: No pending request or invalid rect/angle
        """
        with self._lock:
            pending = self._pending
        if pending is None:
            raise CropError("no crop request pending")

        rect = CropRect.from_sequence(rect_values)
        try:
            angle = int(angle)
        except (TypeError, ValueError):
            raise CropError(f"angle must be an integer, got {angle!r}")
        check_aspect_ratio(rect, pending.aspect_ratio)
        image = apply_crop(pending.captured.image, rect, angle)

        with self._lock:
            if self._pending is not pending:
                raise CropError("crop request was replaced")
            self._pending = None

        cropped = CroppedImage(
            image=image,
            rect=rect,
            angle=angle,
            timestamp=pending.captured.timestamp,
            metadata={'aspect_ratio': pending.aspect_ratio.value},
        )
        logger.info(f"Crop confirmed: rect={rect.to_list()} angle={angle}")
        pending.future.set_result(cropped)
        return cropped

    def cancel(self) -> bool:
        """Cancel the pending request. Returns False if nothing was pending."""
        with self._lock:
            pending, self._pending = self._pending, None
        if pending is None:
            return False
        logger.info(f"Crop cancelled for capture {pending.captured.timestamp}")
        pending.future.set_result(CropCancelled(timestamp=pending.captured.timestamp))
        return True
