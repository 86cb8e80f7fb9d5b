"""
Configuration for fgseg.

Settings live in a YAML file with one section per component:

    model:       descriptor path, device, engine cache, tensor names
    decoder:     thresholds and class count
    stabilizer:  coasting length
    capture:     camera device and resolution
    logging:     level and log file

Missing sections or keys keep the dataclass defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from loguru import logger

from fgseg.core.contracts import ModelGeometry, TensorNames


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"


@dataclass
class ModelConfig:
    """Engine and decoder settings."""
    descriptor_path: str = "models/yolov8n-seg.onnx"
    device: str = "cuda"
    engine_suffix: str = ".trt"
    workspace_mib: int = 1024

    # Declared engine tensor names
    input_tensor: str = "images"
    detections_tensor: str = "output0"
    prototypes_tensor: str = "output1"

    # Decoder
    num_classes: int = 80
    confidence_threshold: float = 0.5
    mask_threshold: float = 0.5

    # Stabilizer
    max_coast_frames: int = 5

    @property
    def geometry(self) -> ModelGeometry:
        return ModelGeometry(num_classes=self.num_classes)

    @property
    def tensor_names(self) -> TensorNames:
        return TensorNames(
            input=self.input_tensor,
            detections=self.detections_tensor,
            prototypes=self.prototypes_tensor,
        )

    @property
    def workspace_bytes(self) -> int:
        return self.workspace_mib << 20


@dataclass
class CaptureConfig:
    """Frame supplier settings."""
    device_index: int = 0
    width: int = 1920
    height: int = 1080
    fps: int = 30


@dataclass
class LoggingConfig:
    """Log sinks."""
    level: str = "INFO"
    file: Optional[str] = "logs/fgseg.log"


@dataclass
class AppConfig:
    """Root configuration."""
    model: ModelConfig = field(default_factory=ModelConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _apply(section: Any, values: Optional[Dict[str, Any]]) -> Any:
    """Copy known keys from a YAML mapping onto a dataclass."""
    if not values:
        return section
    if not isinstance(values, dict):
        raise ValueError(f"config section for {type(section).__name__} must be a mapping")

    known = {f.name for f in fields(section)}
    unknown = sorted(set(values) - known)
    if unknown:
        logger.warning(f"Ignoring unknown {type(section).__name__} keys: {unknown}")
    return replace(section, **{k: v for k, v in values.items() if k in known})


def config_from_dict(raw: Optional[Dict[str, Any]]) -> AppConfig:
    """Build an AppConfig from a parsed YAML document."""
    raw = raw or {}
    model = _apply(ModelConfig(), raw.get("model"))
    # decoder / stabilizer sections are flattened into ModelConfig
    model = _apply(model, raw.get("decoder"))
    model = _apply(model, raw.get("stabilizer"))
    return AppConfig(
        model=model,
        capture=_apply(CaptureConfig(), raw.get("capture")),
        logging=_apply(LoggingConfig(), raw.get("logging")),
    )


def load_config(config_path: Optional[Path | str] = None) -> AppConfig:
    """
    Load configuration from file.

    Args:
        config_path: YAML file. None falls back to config/settings.yaml,
            then to built-in defaults.

    Raises:
        FileNotFoundError: an explicit config_path does not exist
    """
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found at {path}")
    elif DEFAULT_CONFIG_PATH.exists():
        path = DEFAULT_CONFIG_PATH
    else:
        logger.debug("No config file, using defaults")
        return AppConfig()

    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    logger.debug(f"Loaded config from {path}")
    return config_from_dict(raw)
