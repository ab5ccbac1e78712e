# =============================================================================
# Embedding Lens - Camera Capture Module
# =============================================================================
# Provides the CameraCapture class that opens the front-facing camera with
# OpenCV and keeps the latest frame available in a background thread, so the
# inference and segmentation timers can sample it without blocking on I/O.
# =============================================================================

import logging
import threading
from typing import Optional

import cv2
import numpy as np

from shared.errors import PermissionDenied

logger = logging.getLogger(__name__)

PERMISSION_MESSAGE = "Camera access denied. Please allow camera access and restart."


def frame_to_rgba(frame: np.ndarray, size: int = 224) -> bytes:
    """
    Squash a BGR frame to ``size x size`` and return raw RGBA bytes.

    The aspect ratio is not preserved; the CLIP processor center-crops
    afterwards anyway.
    """
    resized = cv2.resize(frame, (size, size), interpolation=cv2.INTER_LINEAR)
    rgba = cv2.cvtColor(resized, cv2.COLOR_BGR2RGBA)
    return rgba.tobytes()


class CameraCapture:
    """
    Continuous camera capture using OpenCV.

    Args:
        camera_index: OpenCV device index (0 = default camera).
        width:        Requested capture width.
        height:       Requested capture height.
    """

    def __init__(self, camera_index: int = 0, width: int = 640, height: int = 480):
        self._camera_index = camera_index
        self._width = width
        self._height = height
        self._capture = None
        self._latest: Optional[np.ndarray] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.frame_count = 0

    def open(self) -> np.ndarray:
        """
        Open the camera and wait for its first decodable frame.

        Starts the background capture thread on success.

        Returns:
            The first BGR frame.

        Raises:
            PermissionDenied: If the device cannot be opened or yields no frame.
        """
        logger.info(
            "Opening camera %d (%dx%d)", self._camera_index, self._width, self._height
        )
        capture = cv2.VideoCapture(self._camera_index)
        if not capture.isOpened():
            capture.release()
            raise PermissionDenied(PERMISSION_MESSAGE)

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)

        ok, frame = capture.read()
        if not ok or frame is None:
            capture.release()
            raise PermissionDenied(PERMISSION_MESSAGE)

        self._capture = capture
        with self._lock:
            self._latest = frame
            self.frame_count = 1

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._capture_loop, name="camera", daemon=True)
        self._thread.start()

        logger.info("Camera streaming (%dx%d)", frame.shape[1], frame.shape[0])
        return frame

    def _capture_loop(self) -> None:
        """Internal loop: read -> store latest -> repeat."""
        while not self._stop_event.is_set():
            ok, frame = self._capture.read()
            if not ok or frame is None:
                logger.debug("Camera read failed; retrying")
                self._stop_event.wait(timeout=0.05)
                continue
            with self._lock:
                self._latest = frame
                self.frame_count += 1
        logger.info("Capture loop stopped.")

    def latest_frame(self) -> Optional[np.ndarray]:
        """Most recent BGR frame, or None before the camera opened."""
        with self._lock:
            return self._latest

    def stop(self) -> None:
        """Signal the capture loop to stop, join it, and release the device."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Camera released.")
