"""
YOLO-seg Mask Decoding.

Turns the raw detection and prototype tensors into one binary mask:
1. Pick the anchor with the highest confidence above threshold
2. Combine the 32 prototype maps with its mask coefficients
3. Sigmoid to a probability map
4. Crop away the letterbox padding (at prototype resolution)
5. Resize to the frame and binarize
"""

from __future__ import annotations

from typing import Optional
import numpy as np
from numpy.typing import NDArray
import cv2
from scipy.special import expit
from loguru import logger

from fgseg.core.contracts import (
    DecodedMask,
    Detection,
    LetterboxTransform,
    ModelGeometry,
)


def sigmoid(x: NDArray[np.float32]) -> NDArray[np.float32]:
    """Element-wise 1 / (1 + e^-x), overflow-safe."""
    return expit(x).astype(np.float32, copy=False)


class MaskDecoder:
    """
    Single-object decoder for YOLO-seg outputs.

    Only the confidence row (row 4) of each anchor is consulted; per-class
    scores beyond it are ignored. For the 80-class COCO export that row is
    the "person" score.
    """

    def __init__(
        self,
        geometry: Optional[ModelGeometry] = None,
        confidence_threshold: float = 0.5,
        mask_threshold: float = 0.5,
    ):
        """
        Initialize decoder.

        Args:
            geometry: Fixed model geometry (tensor layouts)
            confidence_threshold: Anchor confidence must exceed this
            mask_threshold: Probability a pixel must exceed to be foreground
        """
        self.geometry = geometry or ModelGeometry()
        self.confidence_threshold = confidence_threshold
        self.mask_threshold = mask_threshold

    def select(self, detections: NDArray[np.float32]) -> Optional[Detection]:
        """
        Pick the most confident anchor.

        Args:
            detections: Raw detection tensor, [rows, anchors] row-major
                (any shape with that many elements)

        Returns:
            The winning Detection, or None if no anchor exceeds the threshold
        """
        g = self.geometry
        table = np.asarray(detections, dtype=np.float32).reshape(g.detection_rows, g.num_anchors).T

        scores = table[:, g.confidence_row]
        # NaN would win the argmax
        scores = np.where(np.isfinite(scores), scores, -np.inf)
        best = int(np.argmax(scores))
        confidence = float(scores[best])
        if not confidence > self.confidence_threshold:
            return None

        start = g.coefficient_offset
        coefficients = np.array(table[best, start:start + g.num_mask_coeffs], dtype=np.float32)
        return Detection(anchor_index=best, confidence=confidence, coefficients=coefficients)

    def probability_map(
        self,
        coefficients: NDArray[np.float32],
        prototypes: NDArray[np.float32],
    ) -> NDArray[np.float32]:
        """
        sigmoid(coefficients . prototypes) at prototype resolution.

        Args:
            coefficients: (num_mask_coeffs,) float32
            prototypes: Prototype tensor with num_mask_coeffs x Ph x Pw values

        Returns:
            Ph x Pw float32 probabilities
        """
        g = self.geometry
        basis = np.asarray(prototypes, dtype=np.float32).reshape(
            g.num_mask_coeffs, g.prototype_height * g.prototype_width
        )
        raw = np.asarray(coefficients, dtype=np.float32).reshape(1, g.num_mask_coeffs) @ basis
        return sigmoid(raw).reshape(g.prototype_height, g.prototype_width)

    def unletterbox(
        self,
        probability: NDArray[np.float32],
        transform: LetterboxTransform,
    ) -> NDArray[np.uint8]:
        """
        Map a prototype-resolution probability map back onto the frame.

        Returns:
            Binary mask (source_height x source_width), values {0, 255}
        """
        g = self.geometry
        stride = g.prototype_stride
        proto_h, proto_w = probability.shape[:2]

        x0 = min(max(transform.pad_x // stride, 0), proto_w - 1)
        y0 = min(max(transform.pad_y // stride, 0), proto_h - 1)
        crop_w = (transform.target_width - 2 * transform.pad_x) // stride
        crop_h = (transform.target_height - 2 * transform.pad_y) // stride
        crop_w = min(max(crop_w, 1), proto_w - x0)
        crop_h = min(max(crop_h, 1), proto_h - y0)

        crop = np.ascontiguousarray(probability[y0:y0 + crop_h, x0:x0 + crop_w])
        resized = cv2.resize(
            crop,
            (transform.source_width, transform.source_height),
            interpolation=cv2.INTER_LINEAR,
        )
        return np.where(resized > self.mask_threshold, 255, 0).astype(np.uint8)

    def decode(
        self,
        detections: NDArray[np.float32],
        prototypes: NDArray[np.float32],
        transform: LetterboxTransform,
    ) -> Optional[DecodedMask]:
        """
        Full decode of one frame.

        Returns:
            DecodedMask, or None when no anchor qualifies
        """
        detection = self.select(detections)
        if detection is None:
            return None

        probability = self.probability_map(detection.coefficients, prototypes)
        mask = self.unletterbox(probability, transform)
        logger.trace(
            f"Anchor {detection.anchor_index} conf={detection.confidence:.3f} "
            f"fg={np.count_nonzero(mask)}px"
        )
        return DecodedMask(mask=mask, detection=detection, probability_map=probability)
