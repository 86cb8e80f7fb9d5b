"""
Segmentation Model.

Public entry point: one frame in, one binary foreground mask out.

    caller -> Preprocessor -> ExecutionContext.infer -> MaskDecoder
           -> MaskStabilizer -> caller

The engine is built or loaded lazily on init(); afterwards every call
runs synchronously on the model's single execution stream.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import List, Optional

import numpy as np
from numpy.typing import NDArray
from loguru import logger

from fgseg.config import ModelConfig
from fgseg.core.contracts import SegmentationResult, StabilizerState
from fgseg.core.errors import (
    AllocationError,
    DescriptorParseError,
    EngineBuildError,
    EngineLoadError,
    InferenceExecutionError,
    ModelNotReadyError,
    TensorBindingError,
)
from fgseg.engine.base import EngineBackend
from fgseg.engine.engine_store import EngineStore
from fgseg.engine.execution import ExecutionContext
from .decoder import MaskDecoder
from .preprocessor import Preprocessor, validate_frame
from .stabilizer import MaskStabilizer


_FATAL_INIT_ERRORS = (
    DescriptorParseError,
    EngineBuildError,
    EngineLoadError,
    AllocationError,
    TensorBindingError,
)


class SegmentationModel:
    """
    Accelerated single-object segmentation model.

    Guarantees:
    - Output mask always matches the input frame's height and width
    - Output values are exactly {0, 255}
    - A failed frame never raises; it counts as a miss
    - Calls are serialized per instance

    Usage:
        model = SegmentationModel("models/yolov8n-seg.onnx")
        if not model.init():
            raise SystemExit(1)

        mask = model.infer(frame)
    """

    def __init__(
        self,
        descriptor_path: Path | str,
        config: Optional[ModelConfig] = None,
        backend: Optional[EngineBackend] = None,
        store: Optional[EngineStore] = None,
    ):
        """
        Initialize the model (no accelerator work happens here).

        Args:
            descriptor_path: ONNX network descriptor
            config: Model settings (device, thresholds, tensor names)
            backend: Accelerator backend; TensorRT when omitted
            store: Engine store to share between models; one is created
                from the backend when omitted
        """
        self.descriptor_path = Path(descriptor_path)
        self.config = config or ModelConfig(descriptor_path=str(descriptor_path))
        self.geometry = self.config.geometry

        if store is None:
            if backend is None:
                from fgseg.engine.trt_backend import TensorRTBackend
                backend = TensorRTBackend(self._device_index(self.config.device))
            store = EngineStore(
                backend,
                self.geometry,
                workspace_bytes=self.config.workspace_bytes,
                cache_suffix=self.config.engine_suffix,
            )
        self.store = store

        self.preprocessor = Preprocessor(self.geometry)
        self.decoder = MaskDecoder(
            self.geometry,
            confidence_threshold=self.config.confidence_threshold,
            mask_threshold=self.config.mask_threshold,
        )
        self.stabilizer = MaskStabilizer(self.config.max_coast_frames)

        self._context: Optional[ExecutionContext] = None
        self._lock = threading.Lock()

        # Performance tracking
        self._inference_times: List[float] = []
        self._max_inference_history = 100

    @property
    def engine_path(self) -> Path:
        """Engine cache colocated with the descriptor."""
        return self.store.cache_path_for(self.descriptor_path)

    @property
    def is_initialized(self) -> bool:
        return self._context is not None

    @property
    def stabilizer_state(self) -> StabilizerState:
        return self.stabilizer.state

    def init(self) -> bool:
        """
        Build or load the engine and allocate the execution context.

        Returns:
            True if the model is ready, False on any fatal condition
        """
        with self._lock:
            if self._context is not None:
                return True

            try:
                engine = self.store.ensure_ready(self.descriptor_path)
                self._context = ExecutionContext(
                    engine,
                    self.geometry,
                    self.config.tensor_names,
                    device=self.config.device,
                )
            except _FATAL_INIT_ERRORS as e:
                logger.error(f"Failed to initialize segmentation model: {type(e).__name__}: {e}")
                return False

        logger.info(f"Segmentation model initialized ({self.descriptor_path.name})")
        return True

    def infer(self, frame: NDArray[np.uint8]) -> NDArray[np.uint8]:
        """
        Segment one frame.

        Args:
            frame: RGB frame (H x W x 3) uint8

        Returns:
            Binary mask (H x W) uint8, values {0, 255}
        """
        return self.segment(frame).mask

    def segment(self, frame: NDArray[np.uint8]) -> SegmentationResult:
        """
        Segment one frame and report how the mask was obtained.

        Raises:
            ValueError: frame is not an H x W x 3 uint8 image
            ModelNotReadyError: init() has not succeeded
        """
        validate_frame(frame)

        with self._lock:
            if self._context is None:
                raise ModelNotReadyError("call init() before infer()")

            start_time = time.perf_counter()
            input_tensor, transform = self.preprocessor(frame)

            decoded = None
            error_message = None
            try:
                detections, prototypes = self._context.infer(input_tensor)
                decoded = self.decoder.decode(detections, prototypes, transform)
            except InferenceExecutionError as e:
                logger.warning(f"Inference failed, frame counted as a miss: {e}")
                error_message = str(e)

            mask = self.stabilizer.update(
                decoded.mask if decoded is not None else None,
                frame.shape[:2],
            )
            state = self.stabilizer.state

            inference_time = (time.perf_counter() - start_time) * 1000
            self._record_inference_time(inference_time)

        return SegmentationResult(
            mask=mask,
            phase=state.phase,
            miss_count=state.miss_count,
            confidence=decoded.detection.confidence if decoded is not None else None,
            inference_time_ms=inference_time,
            success=error_message is None,
            error_message=error_message,
        )

    def _record_inference_time(self, time_ms: float):
        """Record inference time for performance monitoring."""
        self._inference_times.append(time_ms)
        if len(self._inference_times) > self._max_inference_history:
            self._inference_times.pop(0)

    @property
    def average_inference_time_ms(self) -> float:
        """Get average inference time."""
        if not self._inference_times:
            return 0.0
        return sum(self._inference_times) / len(self._inference_times)

    def reset(self):
        """Forget temporal state (e.g. after a scene cut)."""
        with self._lock:
            self.stabilizer.reset()

    def close(self):
        """Release the execution context. The shared engine stays cached in the store."""
        with self._lock:
            if self._context is not None:
                self._context.close()
                self._context = None
        logger.info("Segmentation model shutdown complete")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @staticmethod
    def _device_index(device: str) -> int:
        _, _, index = device.partition(":")
        return int(index) if index.isdigit() else 0
