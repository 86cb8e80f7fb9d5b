"""Tests for the camera frame supplier with a fake OpenCV device."""

import cv2
import numpy as np
import pytest

from fgseg.capture import video_capture
from fgseg.capture.video_capture import VideoCapture


class FakeDevice:
    def __init__(self, index, opened=True, frames=3):
        self.index = index
        self.opened = opened
        self.frames = frames
        self.props = {}
        self.released = False

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        return self.props.get(prop, 0)

    def read(self):
        if self.frames == 0:
            return False, None
        self.frames -= 1
        frame = np.zeros((4, 6, 3), dtype=np.uint8)
        frame[..., 0] = 255  # blue in BGR
        return True, frame

    def release(self):
        self.released = True


@pytest.fixture
def devices(monkeypatch):
    opened = []

    def factory(index):
        device = FakeDevice(index, **factory.options)
        opened.append(device)
        return device

    factory.options = {}
    monkeypatch.setattr(video_capture.cv2, "VideoCapture", factory)
    return opened, factory


def test_defaults():
    capture = VideoCapture()
    assert (capture.device_index, capture.width, capture.height) == (0, 1920, 1080)
    assert not capture.is_running


def test_start_configures_device(devices):
    opened, _ = devices
    capture = VideoCapture(device_index=1, width=1280, height=720, fps=60)

    assert capture.start()
    device = opened[0]
    assert device.index == 1
    assert device.props[cv2.CAP_PROP_FRAME_WIDTH] == 1280
    assert device.props[cv2.CAP_PROP_FRAME_HEIGHT] == 720
    assert device.props[cv2.CAP_PROP_FPS] == 60
    capture.stop()
    assert device.released


def test_open_failure(devices):
    opened, factory = devices
    factory.options = {"opened": False}

    capture = VideoCapture()
    assert not capture.start()
    assert opened[0].released
    assert not capture.is_running


def test_frames_are_rgb_and_numbered(devices):
    with VideoCapture() as capture:
        frame, number = capture.read_frame()
        assert number == 1
        assert frame.shape == (4, 6, 3)
        assert (frame[..., 2] == 255).all()
        assert (frame[..., 0] == 0).all()

        capture.read_frame()
        capture.read_frame()
        frame, number = capture.read_frame()
        assert frame is None
        assert number == 3


def test_read_before_start():
    frame, number = VideoCapture().read_frame()
    assert frame is None
    assert number == 0
