"""
Base classes for accelerator backends.

To add a new backend:
1. Subclass EngineBackend and CompiledEngine
2. Implement all abstract methods
3. Pass an instance to EngineStore / SegmentationModel

The execution context returned by CompiledEngine.create_execution_context()
must provide the TensorRT IExecutionContext subset used by ExecutionContext:

    set_input_shape(name, shape) -> bool
    get_tensor_shape(name) -> sequence of ints
    set_tensor_address(name, address) -> bool
    execute_async_v3(stream_handle) -> bool
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple


@dataclass(frozen=True)
class TensorSpec:
    """An I/O tensor declared by a compiled engine.

    Attributes:
        name: Declared tensor name
        is_input: True for inputs, False for outputs
        shape: Declared shape; dynamic dimensions are -1
    """
    name: str
    is_input: bool
    shape: Tuple[int, ...]


class CompiledEngine(ABC):
    """A deserialized, ready-to-run engine.

    Safe to share read-only between execution contexts once loaded.
    """

    @abstractmethod
    def io_tensors(self) -> List[TensorSpec]:
        """List the engine's declared I/O tensors."""
        pass

    @abstractmethod
    def create_execution_context(self) -> Any:
        """Create a new execution context, or return None on failure."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the engine and the runtime that produced it."""
        pass

    def tensor(self, name: str) -> TensorSpec:
        """Look up a declared tensor by name.

        Raises:
            KeyError: if the engine declares no tensor with that name
        """
        for spec in self.io_tensors():
            if spec.name == name:
                return spec
        raise KeyError(name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class EngineBackend(ABC):
    """Builds, fingerprints and deserializes engines for one accelerator."""

    @abstractmethod
    def fingerprint(self) -> Dict[str, str]:
        """Identify the runtime and device an engine is built for.

        Stored in the cache header and compared on every load.
        """
        pass

    @abstractmethod
    def build_serialized(
        self,
        descriptor_path: Path,
        input_shape: Sequence[int],
        workspace_bytes: int,
    ) -> bytes:
        """Compile a network descriptor into a serialized engine.

        Raises:
            DescriptorParseError: descriptor cannot be parsed
            EngineBuildError: compilation fails
        """
        pass

    @abstractmethod
    def deserialize(self, blob: bytes) -> CompiledEngine:
        """Turn a serialized engine back into a CompiledEngine.

        Raises:
            EngineLoadError: blob does not deserialize
        """
        pass
