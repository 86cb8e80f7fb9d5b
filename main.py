#!/usr/bin/env python3
"""
fgseg - live foreground segmentation demo.

Builds (or loads) the TensorRT engine for a YOLO-seg ONNX descriptor and
shows the camera feed next to the foreground mask.

Usage:
    python main.py [--config CONFIG_PATH] [--descriptor MODEL.onnx]

    # Export weights to a descriptor first
    python main.py --export-weights yolov8n-seg.pt --build-only

Keyboard Controls:
    R     - Reset the stabilizer
    Q/ESC - Quit
"""

from __future__ import annotations

import argparse
import sys
import time
from typing import Optional

import cv2
import numpy as np
from loguru import logger

from fgseg.capture import VideoCapture
from fgseg.config import AppConfig, load_config
from fgseg.core.contracts import SegmentationResult, StabilizerPhase
from fgseg.core.errors import DescriptorParseError
from fgseg.engine.export import export_descriptor
from fgseg.logging_setup import setup_logging
from fgseg.segmentation import SegmentationModel


# ============================================================
# OUTPUT RENDERER
# ============================================================

PHASE_COLORS = {
    StabilizerPhase.TRACKING: (0, 255, 0),
    StabilizerPhase.COASTING: (0, 200, 255),
    StabilizerPhase.LOST: (0, 0, 255),
}


class MaskRenderer:
    """Shows the frame and its mask side by side."""

    def __init__(self, window_name: str = "fgseg", max_width: int = 1920):
        self.window_name = window_name
        self.max_width = max_width
        cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)

    def render(self, frame: np.ndarray, result: SegmentationResult, fps: float = 0.0):
        """Render one frame with its mask and a status line."""
        display = cv2.cvtColor(frame, cv2.COLOR_RGB2BGR)
        mask_bgr = cv2.cvtColor(result.mask, cv2.COLOR_GRAY2BGR)
        canvas = np.hstack([display, mask_bgr])

        if canvas.shape[1] > self.max_width:
            scale = self.max_width / canvas.shape[1]
            canvas = cv2.resize(canvas, None, fx=scale, fy=scale, interpolation=cv2.INTER_AREA)

        color = PHASE_COLORS[result.phase]
        conf = f"{result.confidence:.2f}" if result.confidence is not None else "-"
        status = (
            f"FPS {fps:.1f} | {result.inference_time_ms:.1f}ms | "
            f"{result.phase.value} | conf {conf} | misses {result.miss_count}"
        )
        cv2.putText(canvas, status, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.7, color, 2)
        cv2.imshow(self.window_name, canvas)

    def close(self):
        """Close the renderer."""
        cv2.destroyWindow(self.window_name)


# ============================================================
# MAIN APPLICATION
# ============================================================

class SegmentationApp:
    """Capture -> segment -> display loop."""

    def __init__(self, config: AppConfig, display: bool = True):
        self.config = config
        self.display = display
        self.model = SegmentationModel(config.model.descriptor_path, config.model)
        self.capture = VideoCapture(
            device_index=config.capture.device_index,
            width=config.capture.width,
            height=config.capture.height,
            fps=config.capture.fps,
        )

    def run(self, max_frames: Optional[int] = None) -> int:
        """Run until Q/ESC, end of stream or max_frames. Returns an exit code."""
        if not self.model.init():
            logger.error("Segmentation model unavailable")
            return 1

        if not self.capture.start():
            self.model.close()
            return 1

        renderer = MaskRenderer() if self.display else None
        frame_count = 0
        start_time = time.time()

        try:
            while max_frames is None or frame_count < max_frames:
                frame, _ = self.capture.read_frame()
                if frame is None:
                    logger.warning("Frame source ended")
                    break

                result = self.model.segment(frame)
                frame_count += 1

                if renderer is None:
                    continue

                elapsed = time.time() - start_time
                renderer.render(frame, result, fps=frame_count / elapsed if elapsed > 0 else 0.0)

                key = cv2.waitKey(1) & 0xFF
                if key in (ord('q'), 27):
                    break
                if key == ord('r'):
                    self.model.reset()

        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.capture.stop()
            self.model.close()
            if renderer is not None:
                renderer.close()

        logger.info(
            f"Processed {frame_count} frames, "
            f"avg inference {self.model.average_inference_time_ms:.1f}ms"
        )
        return 0


def build_engine(config: AppConfig) -> int:
    """Build or load the engine cache, then exit."""
    model = SegmentationModel(config.model.descriptor_path, config.model)
    ok = model.init()
    model.close()
    if ok:
        logger.info(f"Engine ready: {model.engine_path}")
    return 0 if ok else 1


# ============================================================
# ENTRY POINT
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    """Command-line options."""
    parser = argparse.ArgumentParser(
        description="Live foreground segmentation with a TensorRT YOLO-seg engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--descriptor",
        type=str,
        default=None,
        help="ONNX network descriptor (overrides model.descriptor_path)",
    )
    parser.add_argument(
        "--export-weights",
        type=str,
        default=None,
        help="Export these YOLO-seg .pt weights to ONNX and use the result",
    )
    parser.add_argument(
        "--build-only",
        action="store_true",
        help="Build or load the engine cache and exit",
    )
    parser.add_argument(
        "--camera",
        type=int,
        default=None,
        help="Camera index to open (overrides capture.device_index; the compute device is model.device)",
    )
    parser.add_argument(
        "--no-display",
        action="store_true",
        help="Run without a window",
    )
    parser.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Stop after this many frames",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides logging.level)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Log file path (overrides logging.file)",
    )

    return parser


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Copy command-line overrides onto the loaded config."""
    if args.descriptor:
        config.model.descriptor_path = args.descriptor
    if args.camera is not None:
        config.capture.device_index = args.camera
    if args.log_level:
        config.logging.level = args.log_level
    if args.log_file:
        config.logging.file = args.log_file
    return config


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        setup_logging()
        logger.error(str(e))
        return 2

    apply_overrides(config, args)

    setup_logging(config.logging.level, config.logging.file)

    if args.export_weights:
        try:
            descriptor = export_descriptor(args.export_weights, config.model.geometry)
        except DescriptorParseError as e:
            logger.error(f"Export failed: {e}")
            return 1
        config.model.descriptor_path = str(descriptor)

    if args.build_only:
        return build_engine(config)

    app = SegmentationApp(config, display=not args.no_display)
    return app.run(max_frames=args.max_frames)


if __name__ == "__main__":
    sys.exit(main())
