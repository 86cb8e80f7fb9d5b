"""
Export YOLO-seg weights to an ONNX network descriptor.

The descriptor is what EngineStore compiles. Run this once per weights
file; the engine cache is then built next to it on first init().

Requirements:
    - ultralytics
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from loguru import logger

from fgseg.core.contracts import ModelGeometry
from fgseg.core.errors import DescriptorParseError


def _load_yolo(weights_path: Path) -> Any:
    from ultralytics import YOLO
    return YOLO(str(weights_path))


def export_descriptor(
    weights_path: Path | str,
    geometry: ModelGeometry | None = None,
    simplify: bool = True,
) -> Path:
    """
    Export weights to ONNX at the fixed model input size.

    Args:
        weights_path: YOLO-seg .pt weights
        geometry: Model geometry (only the square input size is used)
        simplify: Run the ONNX graph simplifier

    Returns:
        Path of the written .onnx descriptor

    Raises:
        DescriptorParseError: weights missing or export produced nothing
    """
    geometry = geometry or ModelGeometry()
    weights_path = Path(weights_path)
    if not weights_path.is_file():
        raise DescriptorParseError(f"weights not found: {weights_path}")

    if geometry.input_width != geometry.input_height:
        raise ValueError("YOLO export needs a square input size")

    logger.info(f"Exporting {weights_path.name} to ONNX ({geometry.input_width}x{geometry.input_height})...")
    model = _load_yolo(weights_path)
    exported = model.export(
        format="onnx",
        imgsz=geometry.input_width,
        batch=geometry.batch,
        dynamic=False,
        simplify=simplify,
    )

    descriptor = Path(exported) if exported else weights_path.with_suffix(".onnx")
    if not descriptor.is_file():
        raise DescriptorParseError(f"export did not produce {descriptor}")

    logger.info(f"Network descriptor written: {descriptor}")
    return descriptor
