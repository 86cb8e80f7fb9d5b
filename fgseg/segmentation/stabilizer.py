"""
Temporal Mask Stabilizer.

Holds the last good mask across short detection dropouts so the output
does not blink, then degrades to an empty mask.

States:
    TRACKING - fresh detection this frame
    COASTING - miss, last good mask repeated (up to max_coast_frames)
    LOST     - too many misses, or nothing stored yet
"""

from __future__ import annotations

from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray
import cv2
from loguru import logger

from fgseg.core.contracts import StabilizerPhase, StabilizerState


DEFAULT_MAX_COAST_FRAMES = 5


def stabilize(
    state: StabilizerState,
    mask: Optional[NDArray[np.uint8]],
    frame_shape: Tuple[int, int],
    max_coast_frames: int = DEFAULT_MAX_COAST_FRAMES,
) -> Tuple[NDArray[np.uint8], StabilizerState]:
    """
    Decide the output mask for one frame.

    Args:
        state: State after the previous frame
        mask: Decoded mask for this frame, or None on a miss
        frame_shape: (height, width) of the current frame
        max_coast_frames: Misses that still repeat the last good mask

    Returns:
        (output mask sized to the frame, new state)
    """
    height, width = int(frame_shape[0]), int(frame_shape[1])

    if mask is not None:
        return mask, StabilizerState(
            last_good_mask=mask.copy(),
            miss_count=0,
            phase=StabilizerPhase.TRACKING,
        )

    misses = state.miss_count + 1
    last_good = state.last_good_mask

    if last_good is not None and misses <= max_coast_frames:
        if last_good.shape[:2] != (height, width):
            output = cv2.resize(last_good, (width, height), interpolation=cv2.INTER_NEAREST)
        else:
            output = last_good.copy()
        return output, StabilizerState(
            last_good_mask=last_good,
            miss_count=misses,
            phase=StabilizerPhase.COASTING,
        )

    return np.zeros((height, width), dtype=np.uint8), StabilizerState(
        last_good_mask=last_good,
        miss_count=misses,
        phase=StabilizerPhase.LOST,
    )


class MaskStabilizer:
    """
    Stateful wrapper around stabilize().

    Usage:
        stabilizer = MaskStabilizer()
        output = stabilizer.update(decoded_mask_or_none, frame.shape[:2])
    """

    def __init__(self, max_coast_frames: int = DEFAULT_MAX_COAST_FRAMES):
        self.max_coast_frames = max_coast_frames
        self._state = StabilizerState()

    @property
    def state(self) -> StabilizerState:
        return self._state

    def update(
        self,
        mask: Optional[NDArray[np.uint8]],
        frame_shape: Tuple[int, int],
    ) -> NDArray[np.uint8]:
        previous = self._state.phase
        output, self._state = stabilize(self._state, mask, frame_shape, self.max_coast_frames)
        if self._state.phase is not previous:
            logger.debug(f"Stabilizer {previous.value} -> {self._state.phase.value} (misses={self._state.miss_count})")
        return output

    def reset(self):
        """Forget the stored mask and start over in LOST."""
        self._state = StabilizerState()
        logger.debug("Stabilizer reset")
