"""
Shared fixtures: a CPU stand-in for the accelerator runtime.

FakeBackend / FakeEngine / FakeExecutionContext implement the same surface
the TensorRT backend exposes. The fake context reads and writes the bound
device buffers through their raw addresses, so ExecutionContext runs its
real copy / enqueue / copy-back path on CPU torch tensors.
"""

import ctypes
import sys
from collections import deque
from pathlib import Path
from typing import Callable, Dict, Optional

import numpy as np
import pytest

# Make the repository root importable without installing
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fgseg.config import ModelConfig
from fgseg.core.contracts import ModelGeometry, TensorNames
from fgseg.core.errors import DescriptorParseError, EngineBuildError, EngineLoadError
from fgseg.engine.base import CompiledEngine, EngineBackend, TensorSpec


ENGINE_MAGIC = b"fake-engine:"


def make_outputs(
    geometry: ModelGeometry,
    confidence: float = 0.9,
    anchor: int = 100,
    coefficients: Optional[np.ndarray] = None,
    prototypes: Optional[np.ndarray] = None,
):
    """
    Build (detections, prototypes) with a single candidate anchor.

    By default prototype 0 is +8 inside the centre quarter of the model
    input and -8 elsewhere, and the anchor selects prototype 0 only.
    """
    detections = np.zeros((geometry.detection_rows, geometry.num_anchors), dtype=np.float32)
    detections[geometry.confidence_row, anchor] = confidence

    if coefficients is None:
        coefficients = np.zeros(geometry.num_mask_coeffs, dtype=np.float32)
        coefficients[0] = 1.0
    start = geometry.coefficient_offset
    detections[start:start + geometry.num_mask_coeffs, anchor] = coefficients

    if prototypes is None:
        ph, pw = geometry.prototype_height, geometry.prototype_width
        prototypes = np.full((geometry.num_mask_coeffs, ph, pw), -8.0, dtype=np.float32)
        prototypes[0, ph // 4:3 * ph // 4, pw // 4:3 * pw // 4] = 8.0

    return detections, np.asarray(prototypes, dtype=np.float32)


def miss_outputs(geometry: ModelGeometry):
    """Outputs where no anchor clears the threshold."""
    return make_outputs(geometry, confidence=0.1)


class FakeExecutionContext:
    """IExecutionContext stand-in working on raw buffer addresses."""

    def __init__(self, engine: "FakeEngine"):
        self.engine = engine
        self.addresses: Dict[str, int] = {}
        self.input_shape = None
        self.execute_calls = 0
        self.last_input: Optional[np.ndarray] = None

    def set_input_shape(self, name, shape):
        self.input_shape = tuple(shape)
        return True

    def get_tensor_shape(self, name):
        return self.engine.shapes[name]

    def set_tensor_address(self, name, address):
        if self.engine.refuse_address:
            return False
        self.addresses[name] = address
        return True

    def execute_async_v3(self, stream_handle):
        self.execute_calls += 1
        if self.engine.fail_execute:
            return False

        names = self.engine.names
        count = self.engine.geometry.input_elements
        raw = (ctypes.c_float * count).from_address(self.addresses[names.input])
        self.last_input = np.frombuffer(raw, dtype=np.float32).copy()

        detections, prototypes = self.engine.next_outputs()
        self._write(names.detections, detections)
        self._write(names.prototypes, prototypes)
        return True

    def _write(self, name, array):
        data = np.ascontiguousarray(array, dtype=np.float32)
        ctypes.memmove(self.addresses[name], data.ctypes.data, data.nbytes)


class FakeEngine(CompiledEngine):
    """CompiledEngine whose outputs are scripted per call."""

    def __init__(
        self,
        geometry: Optional[ModelGeometry] = None,
        names: Optional[TensorNames] = None,
        provider: Optional[Callable] = None,
    ):
        self.geometry = geometry or ModelGeometry()
        self.names = names or TensorNames()
        self.provider = provider or (lambda: make_outputs(self.geometry))
        self.queue = deque()
        self.fail_execute = False
        self.fail_context = False
        self.refuse_address = False
        self.closed = False
        self.contexts = []
        self.shapes = {
            self.names.input: self.geometry.input_shape,
            self.names.detections: self.geometry.detection_shape,
            self.names.prototypes: self.geometry.prototype_shape,
        }
        # Declared in an order unrelated to the roles
        self.specs = [
            TensorSpec(self.names.prototypes, False, self.geometry.prototype_shape),
            TensorSpec(self.names.input, True, (-1, 3, -1, -1)),
            TensorSpec(self.names.detections, False, self.geometry.detection_shape),
        ]

    def script(self, *outputs):
        """Queue outputs for the next calls; the provider is used after."""
        self.queue.extend(outputs)

    def next_outputs(self):
        if self.queue:
            return self.queue.popleft()
        return self.provider()

    def io_tensors(self):
        return list(self.specs)

    def create_execution_context(self):
        if self.fail_context:
            return None
        context = FakeExecutionContext(self)
        self.contexts.append(context)
        return context

    def close(self):
        self.closed = True


class FakeBackend(EngineBackend):
    """EngineBackend that "compiles" by tagging the descriptor bytes."""

    def __init__(self, geometry: Optional[ModelGeometry] = None, device: str = "fake-gpu"):
        self.geometry = geometry or ModelGeometry()
        self.device = device
        self.build_count = 0
        self.deserialize_count = 0
        self.fail_build = False
        self.corrupt_output = False
        self.engines = []
        # method name -> exception raised from inside the runtime
        self.crash: Dict[str, Exception] = {}

    def _maybe_crash(self, method):
        if method in self.crash:
            raise self.crash[method]

    def fingerprint(self):
        self._maybe_crash("fingerprint")
        return {"runtime": "fake-1.0", "device": self.device, "compute_capability": "0.0"}

    def build_serialized(self, descriptor_path, input_shape, workspace_bytes):
        self.build_count += 1
        self._maybe_crash("build_serialized")
        self.last_build = (Path(descriptor_path), tuple(input_shape), workspace_bytes)

        data = Path(descriptor_path).read_bytes()
        if not data.startswith(b"onnx"):
            raise DescriptorParseError(f"not an ONNX model: {descriptor_path}")
        if self.fail_build:
            raise EngineBuildError("builder ran out of tactics")
        if self.corrupt_output:
            return b"garbage"
        return ENGINE_MAGIC + data

    def deserialize(self, blob):
        self.deserialize_count += 1
        self._maybe_crash("deserialize")
        if not blob.startswith(ENGINE_MAGIC):
            raise EngineLoadError("engine blob did not deserialize")
        engine = FakeEngine(self.geometry)
        self.engines.append(engine)
        return engine


@pytest.fixture
def geometry():
    return ModelGeometry()


@pytest.fixture
def backend(geometry):
    return FakeBackend(geometry)


@pytest.fixture
def descriptor(tmp_path):
    path = tmp_path / "model.onnx"
    path.write_bytes(b"onnx-graph-v1")
    return path


@pytest.fixture
def cpu_config():
    return ModelConfig(device="cpu")


@pytest.fixture
def frame():
    """A 480 x 640 RGB frame with some structure."""
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(480, 640, 3), dtype=np.uint8)
