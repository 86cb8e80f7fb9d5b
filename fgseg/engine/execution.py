"""
Execution Context.

Owns the device buffers for the three engine I/O tensors and the stream
they run on. One synchronous inference per call.

Buffers are allocated exactly once and bound by declared tensor name,
never by binding position.
"""

from __future__ import annotations

import math
from contextlib import nullcontext
from typing import Any, Dict, Optional, Tuple

import numpy as np
import torch
from numpy.typing import NDArray
from loguru import logger

from fgseg.core.contracts import ModelGeometry, TensorNames
from fgseg.core.errors import (
    AllocationError,
    InferenceExecutionError,
    TensorBindingError,
)
from .base import CompiledEngine


class ExecutionContext:
    """
    Device buffers + one stream bound to a compiled engine.

    Guarantees:
    - Buffers are sized from the model geometry and never resized
    - Only this object writes its device buffers
    - infer() returns after the stream is fully synchronized

    Not reentrant: one call at a time per instance. Create one context per
    thread to run the same engine concurrently.

    Usage:
        with ExecutionContext(engine, geometry) as ctx:
            detections, prototypes = ctx.infer(input_tensor)
    """

    def __init__(
        self,
        engine: CompiledEngine,
        geometry: Optional[ModelGeometry] = None,
        tensor_names: Optional[TensorNames] = None,
        device: str = "cuda",
    ):
        """
        Create the engine context, resolve tensor roles and allocate.

        Args:
            engine: Compiled engine to execute
            geometry: Fixed model geometry (buffer sizes)
            tensor_names: Declared tensor name for each role
            device: torch device for the buffers ("cuda", "cuda:1", "cpu")

        Raises:
            AllocationError: context, stream or buffer allocation failed
            TensorBindingError: declared tensors disagree with the geometry
        """
        self.geometry = geometry or ModelGeometry()
        self.tensor_names = tensor_names or TensorNames()
        self.device = torch.device(device)

        self._context: Any = engine.create_execution_context()
        if self._context is None:
            raise AllocationError("failed to create execution context")

        try:
            self._resolve_roles(engine)
        except TensorBindingError:
            self._context = None
            raise

        counts = {
            self.tensor_names.input: self.geometry.input_elements,
            self.tensor_names.detections: self.geometry.detection_elements,
            self.tensor_names.prototypes: self.geometry.prototype_elements,
        }

        try:
            self._stream = torch.cuda.Stream(self.device) if self.device.type == "cuda" else None
            pin = self.device.type == "cuda"
            self._device_buffers: Dict[str, torch.Tensor] = {
                name: torch.empty(count, dtype=torch.float32, device=self.device)
                for name, count in counts.items()
            }
            self._host_buffers: Dict[str, torch.Tensor] = {
                name: torch.empty(count, dtype=torch.float32, pin_memory=pin)
                for name, count in counts.items()
            }
        except (RuntimeError, AssertionError) as e:
            self._context = None
            raise AllocationError(f"device buffer allocation failed on {self.device}: {e}") from e

        for name, buffer in self._device_buffers.items():
            if self._context.set_tensor_address(name, buffer.data_ptr()) is False:
                self.close()
                raise TensorBindingError(f"engine refused address for tensor '{name}'")

        total_mib = sum(counts.values()) * 4 / (1 << 20)
        logger.info(f"Execution context ready on {self.device} ({total_mib:.1f} MiB device buffers)")

    def _resolve_roles(self, engine: CompiledEngine):
        """Check each role against the engine's declared tensors."""
        names = self.tensor_names
        roles = (
            (names.input, True, self.geometry.input_shape),
            (names.detections, False, self.geometry.detection_shape),
            (names.prototypes, False, self.geometry.prototype_shape),
        )

        declared = {spec.name: spec for spec in engine.io_tensors()}
        for name, is_input, _ in roles:
            spec = declared.get(name)
            if spec is None:
                raise TensorBindingError(
                    f"engine declares no tensor '{name}' (has {sorted(declared)})"
                )
            if spec.is_input != is_input:
                kind = "input" if is_input else "output"
                raise TensorBindingError(f"tensor '{name}' is not an engine {kind}")

        if self._context.set_input_shape(names.input, self.geometry.input_shape) is False:
            raise TensorBindingError(
                f"engine rejected input shape {self.geometry.input_shape} for '{names.input}'"
            )

        for name, _, expected in roles:
            shape = tuple(int(d) for d in self._context.get_tensor_shape(name))
            if math.prod(shape) != math.prod(expected):
                raise TensorBindingError(
                    f"tensor '{name}' has shape {shape}, expected {expected}"
                )

    def infer(
        self,
        host_input: NDArray[np.float32],
    ) -> Tuple[NDArray[np.float32], NDArray[np.float32]]:
        """
        Run one inference.

        Args:
            host_input: Float32 input tensor, geometry.input_elements values

        Returns:
            (detections, prototypes) as flat float32 arrays. They are views
            over the host staging buffers, valid until the next infer().

        Raises:
            ValueError: host_input has the wrong size
            InferenceExecutionError: copy or enqueue failed
        """
        if self._context is None:
            raise InferenceExecutionError("execution context is closed")

        host_input = np.ascontiguousarray(host_input, dtype=np.float32).reshape(-1)
        if host_input.size != self.geometry.input_elements:
            raise ValueError(
                f"input has {host_input.size} elements, expected {self.geometry.input_elements}"
            )

        names = self.tensor_names
        staged_in = self._host_buffers[names.input]
        staged_det = self._host_buffers[names.detections]
        staged_proto = self._host_buffers[names.prototypes]

        try:
            staged_in.copy_(torch.from_numpy(host_input))
            stream_ctx = torch.cuda.stream(self._stream) if self._stream is not None else nullcontext()
            with stream_ctx:
                self._device_buffers[names.input].copy_(staged_in, non_blocking=True)
                if not self._context.execute_async_v3(self.stream_handle):
                    raise InferenceExecutionError("enqueue returned failure")
                staged_det.copy_(self._device_buffers[names.detections], non_blocking=True)
                staged_proto.copy_(self._device_buffers[names.prototypes], non_blocking=True)
            if self._stream is not None:
                self._stream.synchronize()
        except RuntimeError as e:
            raise InferenceExecutionError(f"inference failed: {e}") from e

        return staged_det.numpy(), staged_proto.numpy()

    @property
    def stream_handle(self) -> int:
        """Raw stream handle handed to the engine (0 = no stream)."""
        return self._stream.cuda_stream if self._stream is not None else 0

    @property
    def is_closed(self) -> bool:
        return self._context is None

    def close(self):
        """Release the engine context, buffers and stream."""
        if self._context is None:
            return
        if self._stream is not None:
            self._stream.synchronize()
        self._context = None
        self._device_buffers.clear()
        self._host_buffers.clear()
        self._stream = None
        logger.debug("Execution context released")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
