"""
Layer 4 — Upload
JPEG-encodes the cropped image and sends it with a single HTTP POST.

One attempt only: no retry adapter, no timeout override unless configured.
The outcome is delivered on the main context.
"""
import cv2
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import numpy as np
import requests
from requests.adapters import HTTPAdapter

from error_handlers import (
    EncodingError,
    InvalidEndpointError,
    InvalidResponseError,
    ServerError,
    TransportError,
    UploadError,
)

logger = logging.getLogger(__name__)

CONTENT_TYPE = "image/jpeg"


@dataclass
class UploadOutcome:
    """Terminal result of one upload attempt."""
    success: bool
    message: Optional[str] = None
    error: Optional[UploadError] = None
    status_code: Optional[int] = None

    @classmethod
    def succeeded(cls, message: str, status_code: int = 200) -> "UploadOutcome":
        return cls(success=True, message=message, status_code=status_code)

    @classmethod
    def failed(cls, error: UploadError) -> "UploadOutcome":
        return cls(success=False, error=error, status_code=getattr(error, 'status_code', None))

    def to_dict(self) -> Dict:
        if self.success:
            return {'success': True, 'message': self.message, 'status_code': self.status_code}
        return self.error.to_dict()


def create_upload_session() -> requests.Session:
    """requests session that performs exactly one attempt per request."""
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def validate_endpoint(endpoint_url: str) -> str:
    """
    Raises:
        InvalidEndpointError: Empty URL or not http(s)
    """
    parsed = urlparse(endpoint_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidEndpointError(endpoint_url)
    return endpoint_url


class ImageUploader:
    """
    Upload stage.

    Encoding and the network call run on the worker executor; callers get
    a future and, optionally, a completion posted to the main context.
    """

    SUCCESS_MESSAGE = "Image uploaded successfully"

    def __init__(
        self,
        endpoint_url: str,
        dispatcher=None,
        executor: Optional[ThreadPoolExecutor] = None,
        session: Optional[requests.Session] = None,
        jpeg_quality: int = 80,
        timeout: Optional[float] = None,
    ):
        """
        Initialize uploader.

        Args:
            endpoint_url: http(s) URL receiving the POST
            dispatcher: Main-context dispatcher for completions
            executor: Worker pool (own single worker if None)
            session: requests session (single-attempt session if None)
            jpeg_quality: OpenCV JPEG quality, 0-100
            timeout: requests timeout; None keeps the library default

        Raises:
            InvalidEndpointError: If endpoint_url is not a usable http(s) URL
        """
        self.endpoint_url = validate_endpoint(endpoint_url)
        self.dispatcher = dispatcher
        self.session = session or create_upload_session()
        self.jpeg_quality = int(jpeg_quality)
        self.timeout = timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="upload")
        self._owns_executor = executor is None
        logger.info(f"ImageUploader initialized for {self.endpoint_url}")

    def encode(self, image: np.ndarray) -> bytes:
        """
        JPEG-encode an image.

        Raises:
            EncodingError: Empty image or encoder failure
        """
        if image is None or getattr(image, 'size', 0) == 0:
            raise EncodingError("image is empty")
        try:
            ok, buffer = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
        except cv2.error as e:
            raise EncodingError(e)
        if not ok:
            raise EncodingError("encoder returned no data")
        return buffer.tobytes()

    def upload_sync(self, cropped) -> UploadOutcome:
        """Encode and POST on the calling thread; never raises UploadError."""
        try:
            payload = self.encode(cropped.image)
        except EncodingError as e:
            logger.error(f"Upload aborted: {e.message} ({e.details.get('reason')})")
            return UploadOutcome.failed(e)

        logger.info(f"Uploading {len(payload)} bytes to {self.endpoint_url}")
        try:
            response = self.session.post(
                self.endpoint_url,
                data=payload,
                headers={'Content-Type': CONTENT_TYPE},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Upload transport failure: {e}")
            return UploadOutcome.failed(TransportError(e))

        if response.status_code != 200:
            logger.error(f"Upload rejected with HTTP {response.status_code}")
            return UploadOutcome.failed(ServerError(response.status_code))

        if not response.content:
            logger.error("Upload endpoint answered 200 with an empty body")
            return UploadOutcome.failed(InvalidResponseError())

        logger.info("Upload succeeded")
        return UploadOutcome.succeeded(self.SUCCESS_MESSAGE, response.status_code)

    def upload(self, cropped, completion: Optional[Callable[[UploadOutcome], None]] = None) -> "Future[UploadOutcome]":
        """
        Upload off the caller's context.

        Args:
            cropped: Object with an `image` array (CroppedImage)
            completion: Called with the UploadOutcome on the main context
        """
        if completion is not None and self.dispatcher is None:
            raise ValueError("completion requires a dispatcher")
        future = self._executor.submit(self.upload_sync, cropped)
        if completion is not None:
            future.add_done_callback(lambda f: self.dispatcher.post(completion, self._outcome_of(f)))
        return future

    @staticmethod
    def _outcome_of(future: Future) -> UploadOutcome:
        error = future.exception()
        if error is None:
            return future.result()
        logger.error(f"Unexpected upload failure: {error}", exc_info=error)
        return UploadOutcome.failed(UploadError(
            message=f"Unexpected upload failure: {error}",
            error_code="UPLOAD_FAILED",
            details={'error_type': type(error).__name__}
        ))

    def close(self):
        self.session.close()
        if self._owns_executor:
            self._executor.shutdown(wait=False)
