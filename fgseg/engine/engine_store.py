"""
Engine Store.

Loads a compiled engine from its cache file, or compiles one from the
network descriptor on a cache miss and persists it.

Cache layout:
    magic (8 bytes) | header length (u32 LE) | JSON header | engine blob

The JSON header records the backend fingerprint and the input shape so a
cache produced for another runtime, device or geometry is rebuilt instead
of trusted.
"""

from __future__ import annotations

import json
import os
import struct
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

from loguru import logger

from fgseg.core.contracts import ModelGeometry
from fgseg.core.errors import (
    DescriptorParseError,
    EngineBuildError,
    EngineCompatibilityError,
    EngineLoadError,
    SegmentationError,
)
from .base import CompiledEngine, EngineBackend


CACHE_MAGIC = b"FGSEGENG"
CACHE_FORMAT = 1
DEFAULT_WORKSPACE_BYTES = 1 << 30  # 1 GiB
_HEADER_LEN = struct.Struct("<I")


def engine_cache_path(descriptor_path: Path | str, suffix: str = ".trt") -> Path:
    """Cache file for a descriptor: same directory, same stem, new suffix."""
    return Path(descriptor_path).with_suffix(suffix)


def pack_cache(
    blob: bytes,
    fingerprint: Dict[str, str],
    input_shape: Sequence[int],
) -> bytes:
    """Wrap a serialized engine with its compatibility header."""
    header = json.dumps(
        {
            "format": CACHE_FORMAT,
            "fingerprint": dict(fingerprint),
            "input_shape": list(input_shape),
        },
        sort_keys=True,
    ).encode("utf-8")
    return CACHE_MAGIC + _HEADER_LEN.pack(len(header)) + header + bytes(blob)


def unpack_cache(data: bytes) -> Tuple[dict, bytes]:
    """
    Split a cache file into (header, engine blob).

    Raises:
        EngineCompatibilityError: not a cache file, or a truncated one
    """
    prefix = len(CACHE_MAGIC) + _HEADER_LEN.size
    if len(data) < prefix or not data.startswith(CACHE_MAGIC):
        raise EngineCompatibilityError("engine cache has no fgseg header")

    (header_len,) = _HEADER_LEN.unpack_from(data, len(CACHE_MAGIC))
    if len(data) < prefix + header_len:
        raise EngineCompatibilityError("engine cache header is truncated")

    try:
        header = json.loads(data[prefix:prefix + header_len].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EngineCompatibilityError(f"engine cache header is corrupt: {e}") from e

    if not isinstance(header, dict) or header.get("format") != CACHE_FORMAT:
        raise EngineCompatibilityError("engine cache format is not supported")

    blob = data[prefix + header_len:]
    if not blob:
        raise EngineCompatibilityError("engine cache holds no engine")
    return header, blob


class EngineStore:
    """
    Build-or-load store for compiled engines.

    Guarantees:
    - A valid cache is never rebuilt
    - A missing, corrupt or incompatible cache is rebuilt exactly once
    - A second load failure after a rebuild is fatal
    - One CompiledEngine per cache path per process, shared read-only
    """

    def __init__(
        self,
        backend: EngineBackend,
        geometry: Optional[ModelGeometry] = None,
        workspace_bytes: int = DEFAULT_WORKSPACE_BYTES,
        cache_suffix: str = ".trt",
    ):
        """
        Initialize the store.

        Args:
            backend: Accelerator backend used to build and deserialize
            geometry: Fixed model geometry (input shape of the profile)
            workspace_bytes: Builder workspace memory budget
            cache_suffix: Extension swapped onto the descriptor path
        """
        self.backend = backend
        self.geometry = geometry or ModelGeometry()
        self.workspace_bytes = workspace_bytes
        self.cache_suffix = cache_suffix

        self._engines: Dict[Path, CompiledEngine] = {}
        self._lock = threading.Lock()

        # Number of times the build path ran
        self.build_count: int = 0

    def cache_path_for(self, descriptor_path: Path | str) -> Path:
        return engine_cache_path(descriptor_path, self.cache_suffix)

    def ensure_ready(self, descriptor_path: Path | str) -> CompiledEngine:
        """
        Return a compiled engine for the descriptor.

        Tries the cache first; on any load failure builds from the
        descriptor, persists, and reloads from disk to confirm.

        Raises:
            DescriptorParseError: descriptor missing or malformed
            EngineBuildError: compilation failed
            EngineLoadError: the freshly built cache still does not load
        """
        descriptor_path = Path(descriptor_path)
        cache_path = self.cache_path_for(descriptor_path)

        with self._lock:
            engine = self._engines.get(cache_path)
            if engine is not None:
                return engine

            try:
                engine = self._load(cache_path)
                logger.info(f"Loaded engine cache {cache_path}")
            except EngineLoadError as e:
                logger.warning(f"Could not load engine ({e}). Building from {descriptor_path}...")
                self._build(descriptor_path, cache_path)
                try:
                    engine = self._load(cache_path)
                except EngineLoadError as e2:
                    logger.error(f"Freshly built engine failed to load: {e2}")
                    raise

            self._engines[cache_path] = engine
            return engine

    def release(self):
        """Close every engine this store handed out."""
        with self._lock:
            for engine in self._engines.values():
                engine.close()
            self._engines.clear()
        logger.debug("Engine store released")

    def _load(self, cache_path: Path) -> CompiledEngine:
        if not cache_path.is_file():
            raise EngineLoadError(f"no engine cache at {cache_path}")

        try:
            data = cache_path.read_bytes()
        except OSError as e:
            raise EngineLoadError(f"cannot read engine cache {cache_path}: {e}") from e

        header, blob = unpack_cache(data)
        try:
            self._check_compatible(header)
            return self.backend.deserialize(blob)
        except SegmentationError:
            raise
        except Exception as e:
            raise EngineLoadError(f"backend failed to load {cache_path}: {type(e).__name__}: {e}") from e

    def _check_compatible(self, header: dict):
        expected = self.backend.fingerprint()
        found = header.get("fingerprint")
        if found != expected:
            raise EngineCompatibilityError(
                f"engine cache was built for {found}, running on {expected}"
            )

        shape = header.get("input_shape")
        if shape != list(self.geometry.input_shape):
            raise EngineCompatibilityError(
                f"engine cache input shape {shape} != {list(self.geometry.input_shape)}"
            )

    def _build(self, descriptor_path: Path, cache_path: Path):
        if not descriptor_path.is_file():
            raise DescriptorParseError(f"network descriptor not found: {descriptor_path}")

        self.build_count += 1
        logger.info(
            f"Building engine from {descriptor_path.name} "
            f"(input {self.geometry.input_shape}, workspace {self.workspace_bytes >> 20} MiB)"
        )
        try:
            blob = self.backend.build_serialized(
                descriptor_path,
                self.geometry.input_shape,
                self.workspace_bytes,
            )
            data = pack_cache(blob, self.backend.fingerprint(), self.geometry.input_shape)
        except SegmentationError:
            raise
        except Exception as e:
            raise EngineBuildError(
                f"backend failed to build {descriptor_path.name}: {type(e).__name__}: {e}"
            ) from e
        try:
            self._write_atomic(cache_path, data)
        except OSError as e:
            raise EngineBuildError(f"cannot write engine cache {cache_path}: {e}") from e
        logger.info(f"Engine cache written: {cache_path} ({len(data)} bytes)")

    @staticmethod
    def _write_atomic(path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
