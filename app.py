"""
Gaze-Gated Capture Web Application
Thin coordinator for the layered capture system.

Provides a REST API for:
- Camera session control and live preview
- Gaze gate state for the capture button
- Gated capture, manual crop and upload
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import atexit
import cv2
import logging
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

# Import layers
from layer1_capture import (
    AuthorizationStatus,
    CameraHandler,
    DevicePermissionChecker,
    FrameSource,
    REMEDIATION_HINT,
)
from layer2_alignment import CaptureGate, GazeMonitor, MediaPipeLandmarkDetector
from layer3_crop import WebCropCollaborator
from layer4_upload import ImageUploader

from config import ServiceConfig
from dispatcher import MainThreadDispatcher
from pipeline import CapturePipeline, TriggerResult

# Import error handling
from error_handlers import (
    CameraPermissionError,
    CropError,
    GazeCaptureError,
    InvalidEndpointError,
    handle_error,
)

logger = logging.getLogger(__name__)

PREVIEW_FPS = 15
PREVIEW_WIDTH = 960
GATE_OPEN_COLOR = (0, 200, 0)
GATE_CLOSED_COLOR = (0, 0, 220)


class CaptureSession:
    """
    Owns every component of one capture session.

    The gate is created here and injected into both the gaze monitor
    (writer) and the pipeline (reader).
    """

    def __init__(
        self,
        config: ServiceConfig,
        camera=None,
        permission_checker=None,
        detector=None,
        crop_collaborator=None,
        uploader=None,
        dispatcher: Optional[MainThreadDispatcher] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        logger.info("Initializing CaptureSession")
        self.config = config
        self.dispatcher = dispatcher or MainThreadDispatcher()
        self.executor = executor or ThreadPoolExecutor(
            max_workers=config.worker_threads,
            thread_name_prefix="capture-worker"
        )

        # Layer 2: gate + gaze monitor
        self.gate = CaptureGate()
        self.detector = detector or MediaPipeLandmarkDetector(
            model_path=config.alignment.model_path,
            max_faces=config.alignment.max_faces
        )
        self.monitor = GazeMonitor(
            self.detector,
            self.gate,
            dispatcher=self.dispatcher,
            on_gate_changed=self._on_gate_changed,
            threshold=config.alignment.threshold
        )

        # Layer 1: camera session
        cam_cfg = config.camera
        self.camera = camera or CameraHandler(
            camera_index=cam_cfg.camera_index,
            config={'width': cam_cfg.width, 'height': cam_cfg.height, 'fps': cam_cfg.fps}
        )
        self.frame_source = FrameSource(
            self.camera,
            permission_checker or DevicePermissionChecker(cam_cfg.camera_index),
            self.dispatcher,
            on_frame=self.monitor.on_frame,
            on_permission_denied=self._on_permission_denied,
            on_session_error=self._on_session_error,
            executor=self.executor,
            analysis_width=cam_cfg.analysis_width,
            device_orientation=cam_cfg.device_orientation
        )

        # Layer 3 + 4: crop and upload
        self.crop = crop_collaborator or WebCropCollaborator()
        self.uploader = uploader or ImageUploader(
            config.upload.endpoint_url,
            dispatcher=self.dispatcher,
            executor=self.executor,
            jpeg_quality=config.upload.jpeg_quality,
            timeout=config.upload.timeout
        )

        self.pipeline = CapturePipeline(
            self.gate,
            self.frame_source,
            self.crop,
            self.uploader,
            self.dispatcher
        )

        self.permission_hint: Optional[str] = None
        self.session_error: Optional[GazeCaptureError] = None
        self.results = deque(maxlen=20)

        logger.info("CaptureSession initialized successfully")

    # -------------------------------------------------
    # Main-context callbacks
    # -------------------------------------------------
    def _on_gate_changed(self, aligned):
        logger.info(f"Subject {'is' if aligned else 'is not'} looking straight")
        self.pipeline.on_gate_changed(aligned)

    def _on_permission_denied(self, status, remediation):
        logger.warning(f"Camera permission {status.value}: {remediation}")
        self.permission_hint = remediation

    def _on_session_error(self, error):
        self.session_error = error
        handle_error(error)

    def _on_pipeline_result(self, result):
        self.results.append(result)

    # -------------------------------------------------
    # Operations
    # -------------------------------------------------
    @property
    def permission_status(self) -> AuthorizationStatus:
        return self.frame_source.authorization

    def start_camera(self) -> AuthorizationStatus:
        """Start the camera session without blocking."""
        load = getattr(self.detector, 'load', None)
        if load is not None and not load():
            logger.warning("Landmark detector unavailable; the gate will stay closed")

        self.session_error = None
        status = self.frame_source.start()
        if status == AuthorizationStatus.AUTHORIZED:
            self.permission_hint = None
        return status

    def stop_camera(self):
        self.frame_source.stop()

    def trigger_capture(self) -> TriggerResult:
        return self.pipeline.trigger(completion=self._on_pipeline_result)

    def status(self) -> dict:
        looking_straight, version = self.gate.snapshot()
        return {
            'looking_straight': looking_straight,
            'gate_version': version,
            'pipeline_state': self.pipeline.state.value,
            'permission': self.permission_status.value,
            'camera': self.frame_source.stats(),
            'alignment': self.monitor.stats(),
            'crop_pending': self.crop.has_pending,
            'session_error': self.session_error.to_dict() if self.session_error else None,
            'last_result': self.results[-1].to_dict() if self.results else None,
        }

    def shutdown(self):
        logger.info("Shutting down CaptureSession")
        self.frame_source.shutdown()
        self.crop.cancel()
        self.detector.close()
        self.uploader.close()
        self.executor.shutdown(wait=False)
        self.dispatcher.stop()


def _encode_jpeg(image):
    ok, buffer = cv2.imencode('.jpg', image)
    return buffer.tobytes() if ok else None


def create_app(session: CaptureSession) -> Flask:
    """Build the Flask application around a capture session."""
    app = Flask(__name__)
    CORS(app, origins=["*"])
    app.config['CAPTURE_SESSION'] = session

    # ========================================================================
    # Camera session
    # ========================================================================

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint for service discovery and load balancers"""
        return jsonify({
            "status": "healthy",
            "service": "gaze-capture",
            "version": "1.0.0"
        })

    @app.route('/start_camera', methods=['POST'])
    def start_camera():
        """Start camera session; reports the authorization status"""
        logger.info("Start camera request received")
        status = session.start_camera()
        body = {"success": status == AuthorizationStatus.AUTHORIZED, "permission": status.value}
        if status not in (AuthorizationStatus.AUTHORIZED, AuthorizationStatus.NOT_DETERMINED):
            body.update(CameraPermissionError(status.value, REMEDIATION_HINT).to_dict())
            body["remediation"] = REMEDIATION_HINT
        return jsonify(body)

    @app.route('/stop_camera', methods=['POST'])
    def stop_camera():
        logger.info("Stop camera request received")
        session.stop_camera()
        return jsonify({"success": True})

    @app.route('/permission', methods=['GET'])
    def permission():
        """Permission status plus remediation hint when access is missing"""
        status = session.permission_status
        body = {
            "status": status.value,
            "authorized": status == AuthorizationStatus.AUTHORIZED,
            "remediation": session.permission_hint,
        }
        if session.permission_hint is not None:
            body["error"] = CameraPermissionError(status.value, session.permission_hint).to_dict()
        return jsonify(body)

    @app.route('/video_feed')
    def video_feed():
        """MJPEG preview; border colour mirrors the gate"""
        def generate():
            while session.frame_source.is_running:
                frame = session.frame_source.latest_preview()
                if frame is None:
                    time.sleep(0.1)
                    continue

                h, w = frame.shape[:2]
                if w > PREVIEW_WIDTH:
                    frame = cv2.resize(frame, (PREVIEW_WIDTH, int(h * PREVIEW_WIDTH / w)))
                color = GATE_OPEN_COLOR if session.gate.get() else GATE_CLOSED_COLOR
                cv2.rectangle(frame, (0, 0), (frame.shape[1] - 1, frame.shape[0] - 1), color, 8)

                frame_bytes = _encode_jpeg(frame)
                if frame_bytes is not None:
                    yield (b'--frame\r\n'
                           b'Content-Type: image/jpeg\r\n\r\n' + frame_bytes + b'\r\n')
                time.sleep(1.0 / PREVIEW_FPS)

        return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')

    # ========================================================================
    # Gate + capture pipeline
    # ========================================================================

    @app.route('/gate', methods=['GET'])
    def gate_state():
        last = session.monitor.last_result
        looking_straight, version = session.gate.snapshot()
        return jsonify({
            "looking_straight": looking_straight,
            "gate_version": version,
            "pipeline_state": session.pipeline.state.value,
            "alignment": last.to_dict() if last else None,
        })

    @app.route('/capture', methods=['POST'])
    def capture():
        """Gated capture request; not aligned or busy is not an error"""
        logger.info("Capture request received from client")
        result = session.trigger_capture()
        body = {
            "accepted": result == TriggerResult.STARTED,
            "result": result.value,
            "pipeline_state": session.pipeline.state.value,
        }
        return jsonify(body), 202 if result == TriggerResult.STARTED else 200

    @app.route('/crop/image', methods=['GET'])
    def crop_image():
        """Captured still awaiting a crop decision"""
        pending = session.crop.pending_request()
        if pending is None:
            return jsonify({"success": False, "error": "No crop pending", "error_code": "NO_CROP_PENDING"}), 404

        image_bytes = _encode_jpeg(pending.captured.image)
        if image_bytes is None:
            return jsonify({"success": False, "error": "Could not encode image", "error_code": "ENCODING_FAILED"}), 500

        response = Response(image_bytes, mimetype='image/jpeg')
        response.headers['X-Crop-Aspect-Ratio'] = pending.aspect_ratio.value
        return response

    @app.route('/crop', methods=['POST'])
    def crop():
        """Confirm a crop ({"rect": [x, y, w, h], "angle": 0}) or cancel ({"cancel": true})"""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"success": False, "error": "JSON body required", "error_code": "INVALID_REQUEST"}), 400

        if data.get('cancel'):
            if not session.crop.cancel():
                return jsonify({"success": False, "error": "No crop pending", "error_code": "NO_CROP_PENDING"}), 404
            return jsonify({"success": True, "cancelled": True})

        try:
            cropped = session.crop.submit(data.get('rect'), data.get('angle', 0))
        except CropError as e:
            return jsonify(handle_error(e)), 400

        return jsonify({
            "success": True,
            "rect": cropped.rect.to_list(),
            "angle": cropped.angle,
            "size": [cropped.image.shape[1], cropped.image.shape[0]],
        })

    @app.route("/api/status", methods=["GET"])
    def api_status():
        """Service status"""
        return jsonify({"success": True, **session.status()})

    @app.errorhandler(GazeCaptureError)
    def capture_error(error):
        return jsonify(handle_error(error)), 500

    return app


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    config = ServiceConfig.from_env()

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        session = CaptureSession(config)
    except InvalidEndpointError as e:
        handle_error(e)
        raise SystemExit(1)

    session.dispatcher.start()
    atexit.register(session.shutdown)

    app = create_app(session)
    logger.info(f"Flask server starting on {config.host}:{config.port}")
    app.run(host=config.host, port=config.port, debug=False, threaded=True)


if __name__ == '__main__':
    main()
