"""
Core data contracts for the segmentation pipeline.

All stages exchange these types so that:
- Geometry is fixed for the lifetime of a compiled engine
- Letterbox parameters travel with the frame they describe
- Temporal state is an explicit value, never hidden instance fields
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray


# ============================================================
# ENUMERATIONS
# ============================================================

class StabilizerPhase(Enum):
    """Where the temporal policy currently sits."""
    TRACKING = "tracking"
    COASTING = "coasting"
    LOST = "lost"


# ============================================================
# MODEL GEOMETRY
# ============================================================

@dataclass(frozen=True)
class ModelGeometry:
    """
    Fixed tensor geometry of a YOLO-seg engine.

    Detections are laid out as [rows, anchors] where
    rows = 4 box values + num_classes scores + num_mask_coeffs.
    """
    batch: int = 1
    input_channels: int = 3
    input_height: int = 640
    input_width: int = 640

    num_anchors: int = 8400
    num_classes: int = 80
    num_mask_coeffs: int = 32

    prototype_height: int = 160
    prototype_width: int = 160

    # Row holding the confidence scalar of each anchor
    confidence_row: int = 4

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return (self.batch, self.input_channels, self.input_height, self.input_width)

    @property
    def input_elements(self) -> int:
        return self.batch * self.input_channels * self.input_height * self.input_width

    @property
    def detection_rows(self) -> int:
        return 4 + self.num_classes + self.num_mask_coeffs

    @property
    def detection_shape(self) -> Tuple[int, int, int]:
        return (self.batch, self.detection_rows, self.num_anchors)

    @property
    def detection_elements(self) -> int:
        return self.batch * self.detection_rows * self.num_anchors

    @property
    def coefficient_offset(self) -> int:
        """First row of the mask coefficients."""
        return 4 + self.num_classes

    @property
    def prototype_shape(self) -> Tuple[int, int, int, int]:
        return (self.batch, self.num_mask_coeffs, self.prototype_height, self.prototype_width)

    @property
    def prototype_elements(self) -> int:
        return self.batch * self.num_mask_coeffs * self.prototype_height * self.prototype_width

    @property
    def prototype_stride(self) -> int:
        """Down-scale factor between the model input and the prototype maps."""
        return self.input_width // self.prototype_width


@dataclass(frozen=True)
class TensorNames:
    """Declared engine tensor names for each logical role."""
    input: str = "images"
    detections: str = "output0"
    prototypes: str = "output1"


# ============================================================
# PER-FRAME DATA
# ============================================================

def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero (x.5 -> x+1)."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class LetterboxTransform:
    """
    Geometry applied by the preprocessor.

    Needed by the decoder to map the prototype map back onto the frame.
    """
    scale: float
    pad_x: int
    pad_y: int
    source_width: int
    source_height: int
    target_width: int
    target_height: int

    @property
    def scaled_size(self) -> Tuple[int, int]:
        """(width, height) of the resized frame inside the canvas."""
        return (
            max(1, round_half_up(self.source_width * self.scale)),
            max(1, round_half_up(self.source_height * self.scale)),
        )


@dataclass
class Detection:
    """One anchor selected from the detection tensor."""
    anchor_index: int
    confidence: float
    coefficients: NDArray[np.float32]  # (num_mask_coeffs,)


@dataclass
class DecodedMask:
    """Decoder output for a frame with a qualifying anchor."""
    mask: NDArray[np.uint8]  # H x W, values {0, 255}
    detection: Detection
    probability_map: NDArray[np.float32]  # prototype resolution, pre-threshold


@dataclass(frozen=True)
class StabilizerState:
    """
    Temporal memory carried across calls.

    Passed into and returned from the stabilizer decision function.
    """
    last_good_mask: Optional[NDArray[np.uint8]] = None
    miss_count: int = 0
    phase: StabilizerPhase = StabilizerPhase.LOST


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class SegmentationResult:
    """Result of one call through the model."""
    mask: NDArray[np.uint8]  # H x W, values {0, 255}
    phase: StabilizerPhase
    miss_count: int = 0
    confidence: Optional[float] = None
    inference_time_ms: float = 0.0

    # If inference fails for this frame
    success: bool = True
    error_message: Optional[str] = None

    @property
    def has_detection(self) -> bool:
        """True when this frame produced a fresh detection."""
        return self.phase is StabilizerPhase.TRACKING
