"""Tests for letterbox preprocessing."""

import numpy as np
import pytest

from fgseg.core.contracts import ModelGeometry
from fgseg.segmentation.preprocessor import (
    PAD_VALUE,
    Preprocessor,
    letterbox,
    to_planar,
    validate_frame,
)


class TestGeometry:
    def test_default_yolo_seg_layout(self, geometry):
        assert geometry.input_shape == (1, 3, 640, 640)
        assert geometry.detection_shape == (1, 116, 8400)
        assert geometry.prototype_shape == (1, 32, 160, 160)
        assert geometry.coefficient_offset == 84
        assert geometry.prototype_stride == 4

    def test_element_counts(self, geometry):
        assert geometry.input_elements == 3 * 640 * 640
        assert geometry.detection_elements == 116 * 8400
        assert geometry.prototype_elements == 32 * 160 * 160

    def test_class_count_changes_rows(self):
        assert ModelGeometry(num_classes=1).detection_rows == 37


class TestLetterbox:
    @pytest.mark.parametrize(
        "height,width",
        [(480, 640), (1080, 1920), (1920, 1080), (640, 640), (123, 457), (10, 2000)],
    )
    def test_dominant_axis_fills_target(self, height, width):
        frame = np.zeros((height, width, 3), dtype=np.uint8)
        canvas, t = letterbox(frame, 640, 640)

        assert canvas.shape == (640, 640, 3)
        assert t.scale == pytest.approx(min(640 / width, 640 / height))
        if width >= height:
            assert t.pad_x == 0
            assert abs(width * t.scale - 640) <= 1
        else:
            assert t.pad_y == 0
            assert abs(height * t.scale - 640) <= 1

    def test_landscape_1080p(self):
        frame = np.full((1080, 1920, 3), 10, dtype=np.uint8)
        canvas, t = letterbox(frame, 640, 640)

        assert t.scaled_size == (640, 360)
        assert (t.pad_x, t.pad_y) == (0, 140)
        assert (canvas[:140] == PAD_VALUE).all()
        assert (canvas[500:] == PAD_VALUE).all()
        assert (canvas[140:500] == 10).all()

    def test_portrait_pads_horizontally(self):
        frame = np.zeros((1920, 1080, 3), dtype=np.uint8)
        canvas, t = letterbox(frame, 640, 640)

        assert t.pad_y == 0
        assert t.pad_x == 140
        assert (canvas[:, :140] == PAD_VALUE).all()
        assert (canvas[:, 140:500] == 0).all()

    def test_odd_leftover_goes_right(self):
        # leftover 427 splits 213 / 214
        frame = np.zeros((640, 213, 3), dtype=np.uint8)
        canvas, t = letterbox(frame, 640, 640)

        assert t.pad_x == 213
        assert (canvas[:, 213:426] == 0).all()
        assert (canvas[:, 426:] == PAD_VALUE).all()

    def test_half_pixel_rounds_up(self):
        # 721 * 0.5 = 360.5 -> 361, not the even neighbour 360
        frame = np.zeros((721, 1280, 3), dtype=np.uint8)
        canvas, t = letterbox(frame, 640, 640)

        assert t.scale == 0.5
        assert t.scaled_size == (640, 361)
        assert t.pad_y == 139
        assert (canvas[139:500] == 0).all()
        assert (canvas[500:] == PAD_VALUE).all()

    def test_same_size_is_not_resized(self):
        frame = np.arange(640 * 640 * 3, dtype=np.uint32).astype(np.uint8).reshape(640, 640, 3)
        canvas, t = letterbox(frame, 640, 640)
        assert t.scale == 1.0
        np.testing.assert_array_equal(canvas, frame)


class TestPlanar:
    def test_layout_and_range(self):
        image = np.zeros((4, 5, 3), dtype=np.uint8)
        image[1, 2] = (255, 0, 51)
        tensor = to_planar(image)

        assert tensor.shape == (1, 3, 4, 5)
        assert tensor.dtype == np.float32
        assert tensor.flags["C_CONTIGUOUS"]
        assert tensor[0, 0, 1, 2] == pytest.approx(1.0)
        assert tensor[0, 1, 1, 2] == 0.0
        assert tensor[0, 2, 1, 2] == pytest.approx(0.2)

    def test_preprocessor_output(self, frame):
        tensor, t = Preprocessor()(frame)
        assert tensor.shape == (1, 3, 640, 640)
        assert tensor.min() >= 0.0 and tensor.max() <= 1.0
        # Padding rows carry the gray value
        assert np.allclose(tensor[0, :, 0, :], PAD_VALUE / 255.0)
        assert t.pad_y == 80


class TestValidateFrame:
    @pytest.mark.parametrize(
        "bad",
        [
            None,
            [[1, 2, 3]],
            np.zeros((10, 10), dtype=np.uint8),
            np.zeros((10, 10, 4), dtype=np.uint8),
            np.zeros((10, 10, 3), dtype=np.float32),
            np.zeros((0, 10, 3), dtype=np.uint8),
        ],
    )
    def test_rejects(self, bad):
        with pytest.raises(ValueError):
            validate_frame(bad)

    def test_accepts_rgb(self, frame):
        validate_frame(frame)
