"""
Engine module.

Responsibilities:
- Build-or-load of the compiled engine cache
- Device buffer ownership and stream execution
- Descriptor export from trained weights
"""

from .base import CompiledEngine, EngineBackend, TensorSpec
from .engine_store import EngineStore, engine_cache_path
from .execution import ExecutionContext
from .trt_backend import TensorRTBackend
