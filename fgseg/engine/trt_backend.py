"""
TensorRT backend.

Compiles ONNX network descriptors into TensorRT engines and deserializes
cached engines. Every TensorRT object is held by an OwnedHandle so it is
released on every exit path, success or failure.

Requirements:
    - tensorrt
    - torch (CUDA build) for the device fingerprint
"""

from __future__ import annotations

from contextlib import ExitStack
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type

from loguru import logger

from fgseg.core.errors import (
    DescriptorParseError,
    EngineBuildError,
    EngineLoadError,
    SegmentationError,
)
from .base import CompiledEngine, EngineBackend, TensorSpec


def _import_trt():
    """Import tensorrt on first use."""
    try:
        import tensorrt as trt
    except ImportError as e:
        raise EngineBuildError(f"TensorRT is not available: {e}") from e
    return trt


class OwnedHandle:
    """
    Exclusive owner of one accelerator-runtime object.

    The object is dropped by release(), which also runs on context exit.
    TensorRT frees the native resource once the last reference is gone.
    """

    def __init__(self, obj: Any, label: str):
        self._obj = obj
        self.label = label

    @property
    def obj(self) -> Any:
        if self._obj is None:
            raise RuntimeError(f"{self.label} was already released")
        return self._obj

    @property
    def released(self) -> bool:
        return self._obj is None

    def release(self):
        if self._obj is not None:
            logger.trace(f"Releasing {self.label}")
            self._obj = None

    def __enter__(self) -> Any:
        return self.obj

    def __exit__(self, exc_type, exc, tb):
        self.release()


def _own(
    stack: ExitStack,
    obj: Any,
    label: str,
    error: Type[SegmentationError],
) -> Any:
    """Register obj with the stack, or raise error if creation returned None."""
    if obj is None:
        raise error(f"failed to create {label}")
    return stack.enter_context(OwnedHandle(obj, label))


_logger_cls = None


def _make_trt_logger(trt) -> Any:
    """Build an ILogger that forwards TensorRT messages to loguru."""
    global _logger_cls
    if _logger_cls is None:
        severity = trt.ILogger.Severity
        levels = {
            severity.INTERNAL_ERROR: "CRITICAL",
            severity.ERROR: "ERROR",
            severity.WARNING: "WARNING",
            severity.INFO: "DEBUG",
            severity.VERBOSE: "TRACE",
        }

        class _LoguruTrtLogger(trt.ILogger):
            def __init__(self):
                trt.ILogger.__init__(self)

            def log(self, sev, msg):
                logger.opt(depth=1).log(levels.get(sev, "DEBUG"), f"[TensorRT] {msg}")

        _logger_cls = _LoguruTrtLogger
    return _logger_cls()


class TensorRTEngine(CompiledEngine):
    """A deserialized TensorRT engine and the runtime that owns it."""

    def __init__(self, runtime: Any, engine: Any):
        self._runtime = OwnedHandle(runtime, "runtime")
        self._engine = OwnedHandle(engine, "engine")
        self._specs: Optional[List[TensorSpec]] = None

    def io_tensors(self) -> List[TensorSpec]:
        if self._specs is None:
            trt = _import_trt()
            engine = self._engine.obj
            specs = []
            for i in range(engine.num_io_tensors):
                name = engine.get_tensor_name(i)
                specs.append(TensorSpec(
                    name=name,
                    is_input=engine.get_tensor_mode(name) == trt.TensorIOMode.INPUT,
                    shape=tuple(engine.get_tensor_shape(name)),
                ))
            self._specs = specs
        return self._specs

    def create_execution_context(self) -> Any:
        return self._engine.obj.create_execution_context()

    def close(self):
        # Engine before the runtime that deserialized it
        self._engine.release()
        self._runtime.release()


class TensorRTBackend(EngineBackend):
    """
    Builds and loads TensorRT engines for one CUDA device.

    Usage:
        backend = TensorRTBackend()
        store = EngineStore(backend)
        engine = store.ensure_ready("yolov8n-seg.onnx")
    """

    def __init__(self, device_index: int = 0):
        self.device_index = device_index
        self._trt_logger = None
        self._fingerprint: Optional[Dict[str, str]] = None

    @property
    def trt_logger(self) -> Any:
        if self._trt_logger is None:
            self._trt_logger = _make_trt_logger(_import_trt())
        return self._trt_logger

    def fingerprint(self) -> Dict[str, str]:
        if self._fingerprint is None:
            import torch

            try:
                trt = _import_trt()
                props = torch.cuda.get_device_properties(self.device_index)
            except Exception as e:
                raise EngineLoadError(
                    f"cannot identify CUDA device {self.device_index}: {type(e).__name__}: {e}"
                ) from e
            self._fingerprint = {
                "runtime": f"tensorrt-{trt.__version__}",
                "device": props.name,
                "compute_capability": f"{props.major}.{props.minor}",
            }
        return self._fingerprint

    def build_serialized(
        self,
        descriptor_path: Path,
        input_shape: Sequence[int],
        workspace_bytes: int,
    ) -> bytes:
        try:
            return self._build_serialized(descriptor_path, input_shape, workspace_bytes)
        except SegmentationError:
            raise
        except Exception as e:
            raise EngineBuildError(f"TensorRT build failed: {type(e).__name__}: {e}") from e

    def _build_serialized(
        self,
        descriptor_path: Path,
        input_shape: Sequence[int],
        workspace_bytes: int,
    ) -> bytes:
        trt = _import_trt()
        shape = tuple(int(d) for d in input_shape)

        with ExitStack() as stack:
            builder = _own(stack, trt.Builder(self.trt_logger), "builder", EngineBuildError)
            network = _own(
                stack,
                builder.create_network(self._network_flags(trt)),
                "network definition",
                EngineBuildError,
            )
            parser = _own(stack, trt.OnnxParser(network, self.trt_logger), "ONNX parser", EngineBuildError)
            config = _own(stack, builder.create_builder_config(), "builder config", EngineBuildError)

            if not parser.parse_from_file(str(descriptor_path)):
                errors = [str(parser.get_error(i)) for i in range(parser.num_errors)]
                raise DescriptorParseError(
                    f"failed to parse {descriptor_path}: {'; '.join(errors) or 'unknown error'}"
                )

            # Single profile, min = opt = max = the fixed input shape
            profile = builder.create_optimization_profile()
            for i in range(network.num_inputs):
                tensor = network.get_input(i)
                profile.set_shape(tensor.name, shape, shape, shape)
            if config.add_optimization_profile(profile) < 0:
                raise EngineBuildError("optimization profile rejected")

            config.set_memory_pool_limit(trt.MemoryPoolType.WORKSPACE, workspace_bytes)

            serialized = _own(
                stack,
                builder.build_serialized_network(network, config),
                "serialized engine",
                EngineBuildError,
            )
            return bytes(serialized)

    def deserialize(self, blob: bytes) -> CompiledEngine:
        try:
            return self._deserialize(blob)
        except EngineLoadError:
            raise
        except Exception as e:
            raise EngineLoadError(f"TensorRT runtime failed: {type(e).__name__}: {e}") from e

    def _deserialize(self, blob: bytes) -> CompiledEngine:
        trt = _import_trt()
        runtime = trt.Runtime(self.trt_logger)
        if runtime is None:
            raise EngineLoadError("failed to create TensorRT runtime")

        engine = runtime.deserialize_cuda_engine(blob)
        if engine is None:
            raise EngineLoadError("engine blob did not deserialize")
        return TensorRTEngine(runtime, engine)

    @staticmethod
    def _network_flags(trt) -> int:
        # Explicit batch is implicit (and the flag deprecated) from TensorRT 10
        flag = getattr(trt.NetworkDefinitionCreationFlag, "EXPLICIT_BATCH", None)
        return 0 if flag is None else 1 << int(flag)
