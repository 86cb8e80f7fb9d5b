"""
Video Capture Module.

Responsibilities:
- Camera frame acquisition (RGB, any size)
"""

from .video_capture import VideoCapture
