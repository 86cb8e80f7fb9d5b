"""
Core data contracts and error types shared by every stage.
"""

from .contracts import (
    ModelGeometry,
    TensorNames,
    LetterboxTransform,
    Detection,
    DecodedMask,
    StabilizerPhase,
    StabilizerState,
    SegmentationResult,
)
from .errors import (
    SegmentationError,
    DescriptorParseError,
    EngineBuildError,
    EngineLoadError,
    EngineCompatibilityError,
    AllocationError,
    TensorBindingError,
    InferenceExecutionError,
    ModelNotReadyError,
)
