"""
Segmentation module.

Responsibilities:
- Letterbox preprocessing into the fixed model input
- YOLO-seg mask decoding and letterbox inversion
- Temporal hold of the last good mask
- The SegmentationModel entry point
"""

from .preprocessor import Preprocessor, letterbox
from .decoder import MaskDecoder
from .stabilizer import MaskStabilizer, stabilize
from .segmentation_model import SegmentationModel
