"""
fgseg - accelerated foreground segmentation.

Turns one captured video frame into a binary foreground mask using a
compiled YOLO-seg network.

Pipeline (strict order, one call per frame):
1. Letterbox the frame into the fixed 640x640 model input
2. Run the compiled engine on a single execution stream
3. Decode the best anchor against the mask prototypes
4. Undo the letterbox and binarize at frame resolution
5. Hold the last good mask across short detection dropouts
"""

__version__ = "0.1.0"
__author__ = "fgseg Team"
