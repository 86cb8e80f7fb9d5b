"""
Letterbox Preprocessing.

Fits an arbitrary-size RGB frame into the fixed model input without
distorting it:
- Aspect-preserving resize
- Constant gray padding (114) centred on both axes
- [0, 1] float, planar CHW layout with a batch axis
"""

from __future__ import annotations

from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2

from fgseg.core.contracts import LetterboxTransform, ModelGeometry, round_half_up


PAD_VALUE = 114


def validate_frame(frame: NDArray[np.uint8]):
    """Raise ValueError unless frame is a non-empty H x W x 3 uint8 image."""
    if frame is None or not isinstance(frame, np.ndarray):
        raise ValueError("frame must be a numpy array")
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"frame must be H x W x 3, got shape {frame.shape}")
    if frame.dtype != np.uint8:
        raise ValueError(f"frame must be uint8, got {frame.dtype}")
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise ValueError("frame is empty")


def letterbox(
    frame: NDArray[np.uint8],
    target_width: int,
    target_height: int,
    pad_value: int = PAD_VALUE,
) -> Tuple[NDArray[np.uint8], LetterboxTransform]:
    """
    Resize a frame into a padded target canvas.

    Scaled sizes round halves up (360.5 -> 361), not to even. The pad is
    split with integer division, so an odd leftover pixel lands on the
    right/bottom edge.

    Args:
        frame: RGB frame (H x W x 3) uint8
        target_width: Canvas width
        target_height: Canvas height
        pad_value: Gray level of the padding

    Returns:
        (canvas H x W x 3 uint8, transform applied)
    """
    validate_frame(frame)
    src_h, src_w = frame.shape[:2]

    scale = min(target_width / src_w, target_height / src_h)
    scaled_w = max(1, round_half_up(src_w * scale))
    scaled_h = max(1, round_half_up(src_h * scale))
    pad_x = (target_width - scaled_w) // 2
    pad_y = (target_height - scaled_h) // 2

    if (scaled_w, scaled_h) != (src_w, src_h):
        resized = cv2.resize(frame, (scaled_w, scaled_h), interpolation=cv2.INTER_LINEAR)
    else:
        resized = frame

    canvas = np.full((target_height, target_width, 3), pad_value, dtype=np.uint8)
    canvas[pad_y:pad_y + scaled_h, pad_x:pad_x + scaled_w] = resized

    transform = LetterboxTransform(
        scale=scale,
        pad_x=pad_x,
        pad_y=pad_y,
        source_width=src_w,
        source_height=src_h,
        target_width=target_width,
        target_height=target_height,
    )
    return canvas, transform


def to_planar(image: NDArray[np.uint8]) -> NDArray[np.float32]:
    """HWC uint8 -> contiguous 1 x C x H x W float32 in [0, 1]."""
    chw = image.astype(np.float32).transpose(2, 0, 1) / 255.0
    return np.ascontiguousarray(chw[np.newaxis])


class Preprocessor:
    """
    Turns frames into engine input tensors.

    Usage:
        pre = Preprocessor(geometry)
        tensor, transform = pre(frame)
    """

    def __init__(self, geometry: Optional[ModelGeometry] = None, pad_value: int = PAD_VALUE):
        self.geometry = geometry or ModelGeometry()
        self.pad_value = pad_value

    def __call__(
        self,
        frame: NDArray[np.uint8],
    ) -> Tuple[NDArray[np.float32], LetterboxTransform]:
        """
        Preprocess one frame.

        Returns:
            (input tensor 1 x 3 x Th x Tw float32, letterbox transform)
        """
        canvas, transform = letterbox(
            frame,
            self.geometry.input_width,
            self.geometry.input_height,
            self.pad_value,
        )
        return to_planar(canvas), transform
