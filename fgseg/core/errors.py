"""
Error kinds raised by the segmentation pipeline.

Fatal kinds stop the model from initializing. EngineLoadError gets one
rebuild attempt. InferenceExecutionError only costs the current frame.
"""

from __future__ import annotations


class SegmentationError(Exception):
    """Base class for every fgseg error."""


class DescriptorParseError(SegmentationError):
    """The network descriptor is missing, unreadable or malformed."""


class EngineBuildError(SegmentationError):
    """Compiling the network descriptor into an engine failed."""


class EngineLoadError(SegmentationError):
    """The engine cache is missing or does not deserialize."""


class EngineCompatibilityError(EngineLoadError):
    """The engine cache was produced for another runtime, device or shape."""


class AllocationError(SegmentationError):
    """Device buffers, the stream or the execution context could not be created."""


class TensorBindingError(SegmentationError):
    """A declared engine tensor is missing or disagrees with the model geometry."""


class InferenceExecutionError(SegmentationError):
    """Copy or enqueue failed while running one frame."""


class ModelNotReadyError(SegmentationError):
    """The model was used before a successful init()."""
