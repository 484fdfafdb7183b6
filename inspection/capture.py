# =============================================================================
# Zero-Shot Inspection - Camera Capture Module
# =============================================================================
# Provides the CameraCapture class for periodic webcam capture using OpenCV.
# Two kinds of frame are produced:
#
#   - downscaled JPEG frames for classification (aspect ratio preserved,
#     width capped at ``max_width``, shorter side at least ``min_size``)
#   - a single full-resolution JPEG at native resolution for the upload
#
# Both return None when the camera is not ready, and the frame is skipped.
# Periodic frames are delivered via a callback, decoupling capture timing
# from downstream processing.
# =============================================================================

import io
import logging
import threading
from typing import Callable, Optional, Tuple

import cv2
from PIL import Image

logger = logging.getLogger(__name__)

FRAME_QUALITY = 0.8


def downscale_size(
    width: int, height: int, max_width: int = 320, min_size: int = 64
) -> Tuple[int, int]:
    """
    Target size for a classification frame.

    Both sides are scaled by the same factor.  The width is capped at
    ``max_width``, but when that would leave the shorter side below
    ``min_size`` the frame is scaled so the shorter side is exactly
    ``min_size`` (very wide frames may then exceed the width cap).

    Args:
        width:     Native frame width.
        height:    Native frame height.
        max_width: Width cap; frames narrower than this keep their width.
        min_size:  Lower bound for the shorter side.

    Returns:
        (width, height) of the downscaled frame.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid frame size {width}x{height}")
    scale = min(width, max_width) / width
    shorter = min(width, height)
    if shorter * scale < min_size:
        scale = min_size / shorter
    return max(min_size, round(width * scale)), max(min_size, round(height * scale))


def encode_jpeg(image: Image.Image, quality: float) -> bytes:
    """Encode a PIL image as JPEG; ``quality`` is a fraction in (0, 1]."""
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=max(1, min(95, int(round(quality * 100)))))
    return buffer.getvalue()


class CameraCapture:
    """
    Periodic webcam capture using OpenCV.

    Args:
        camera_index:     OpenCV device index (0 = default camera).
        capture_interval: Seconds between consecutive classification frames.
        max_width:        Width cap for classification frames.
        min_size:         Minimum side length for classification frames.
    """

    def __init__(
        self,
        camera_index: int = 0,
        capture_interval: float = 0.5,
        max_width: int = 320,
        min_size: int = 64,
    ):
        self._camera_index = camera_index
        self._capture_interval = capture_interval
        self._max_width = max_width
        self._min_size = min_size

        self._device: Optional[cv2.VideoCapture] = None
        self._device_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -----------------------------------------------------------------
    # Device
    # -----------------------------------------------------------------

    def open(self) -> bool:
        """
        Open the camera device.

        Returns:
            True if the camera is open and ready.
        """
        with self._device_lock:
            if self._device is not None and self._device.isOpened():
                return True
            device = cv2.VideoCapture(self._camera_index)
            if not device.isOpened():
                logger.error("Failed to open camera %d", self._camera_index)
                device.release()
                return False
            self._device = device
        logger.info(
            "Camera %d opened: %dx%d",
            self._camera_index,
            int(device.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(device.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        return True

    def release(self) -> None:
        with self._device_lock:
            if self._device is not None:
                self._device.release()
                self._device = None
                logger.info("Camera %d released.", self._camera_index)

    def _read_image(self) -> Optional[Image.Image]:
        with self._device_lock:
            if self._device is None or not self._device.isOpened():
                return None
            ok, frame = self._device.read()
        if not ok or frame is None or frame.size == 0:
            logger.debug("Camera not ready, frame skipped")
            return None
        # OpenCV delivers BGR
        return Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))

    # -----------------------------------------------------------------
    # Frames
    # -----------------------------------------------------------------

    def capture_downsampled_frame(self) -> Optional[bytes]:
        """
        Capture one classification frame.

        Returns:
            JPEG bytes, or None when the camera is not ready.
        """
        image = self._read_image()
        if image is None:
            return None
        size = downscale_size(image.width, image.height, self._max_width, self._min_size)
        if size != image.size:
            image = image.resize(size, Image.BILINEAR)
        return encode_jpeg(image, FRAME_QUALITY)

    def capture_full_resolution_frame(self, quality: float = 0.92) -> Optional[bytes]:
        """
        Capture one frame at native resolution for upload.

        Args:
            quality: JPEG quality as a fraction in (0, 1].

        Returns:
            JPEG bytes, or None when the camera is not ready.
        """
        image = self._read_image()
        if image is None:
            logger.warning("Full-resolution capture failed: camera not ready")
            return None
        logger.info("Captured full-resolution frame %dx%d", image.width, image.height)
        return encode_jpeg(image, quality)

    # -----------------------------------------------------------------
    # Capture loop
    # -----------------------------------------------------------------

    def start(self, callback: Callable[[bytes], None]) -> None:
        """
        Start periodic capture in a background daemon thread.

        Each downscaled frame is passed to ``callback``; frames that could
        not be read are skipped.  The first frame is captured immediately.

        Args:
            callback: Function that receives JPEG bytes for each frame.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Capture thread is already running.")
            return

        self._stop_event.clear()

        def _capture_loop():
            logger.info(
                "Capture loop started (interval=%.2fs, camera=%d)",
                self._capture_interval,
                self._camera_index,
            )
            while not self._stop_event.is_set():
                try:
                    frame = self.capture_downsampled_frame()
                    if frame is not None:
                        callback(frame)
                except Exception:
                    logger.exception("Error during frame capture/processing")

                self._stop_event.wait(timeout=self._capture_interval)

            logger.info("Capture loop stopped.")

        self._thread = threading.Thread(target=_capture_loop, name="camera-capture", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Signal the capture loop to stop and wait for the thread to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
            logger.info("Capture thread joined.")
