"""
Camera Frame Supplier.

Handles:
- Webcam acquisition through OpenCV
- BGR -> RGB conversion (the model expects RGB)
- Measured capture FPS
"""

from __future__ import annotations

import time
from collections import deque
from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger


class VideoCapture:
    """
    OpenCV camera wrapper yielding RGB frames.

    Frame size may differ from the requested one; the segmentation model
    accepts any size.
    """

    def __init__(
        self,
        device_index: int = 0,
        width: int = 1920,
        height: int = 1080,
        fps: int = 30,
    ):
        """
        Initialize video capture.

        Args:
            device_index: Camera device index
            width: Requested capture width
            height: Requested capture height
            fps: Requested frames per second
        """
        self.device_index = device_index
        self.width = width
        self.height = height
        self.fps = fps

        self._capture: Optional[cv2.VideoCapture] = None
        self._frame_count: int = 0
        self._frame_times: deque[float] = deque(maxlen=30)

    def start(self) -> bool:
        """
        Open the camera.

        Returns:
            True if started successfully
        """
        if self._capture is not None:
            return True

        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            logger.error(f"Failed to open camera {self.device_index}")
            capture.release()
            return False

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        capture.set(cv2.CAP_PROP_FPS, self.fps)

        actual_width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(
            f"Video capture started: {actual_width}x{actual_height} @ {capture.get(cv2.CAP_PROP_FPS):.0f}fps"
        )

        self._capture = capture
        return True

    def stop(self):
        """Release the camera."""
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Video capture stopped")

    def read_frame(self) -> Tuple[Optional[NDArray[np.uint8]], int]:
        """
        Read the next frame.

        Returns:
            (RGB frame or None on failure, sequential frame number)
        """
        if self._capture is None:
            return None, self._frame_count

        ok, frame = self._capture.read()
        if not ok or frame is None:
            return None, self._frame_count

        self._frame_count += 1
        self._frame_times.append(time.perf_counter())
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB), self._frame_count

    @property
    def is_running(self) -> bool:
        return self._capture is not None

    @property
    def actual_fps(self) -> float:
        """FPS measured over the last 30 frames."""
        if len(self._frame_times) < 2:
            return 0.0
        duration = self._frame_times[-1] - self._frame_times[0]
        return (len(self._frame_times) - 1) / duration if duration > 0 else 0.0

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
