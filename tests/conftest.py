"""
Pytest configuration and shared fixtures.
"""
import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from ssd_detector import SSDDetector  # noqa: E402


class FakeBackend:
    """Stands in for a loaded network: fixed input shape, canned output"""

    def __init__(self, output, input_shape=(3, 4, 4)):
        self.output = np.asarray(output, dtype=np.float32)
        self.input_shape = input_shape
        self.blobs = []

    def forward(self, blob):
        self.blobs.append(blob)
        return self.output.reshape(1, 1, -1, 7)


class FakeCapture:
    """cv2.VideoCapture replacement replaying a list of frames"""

    def __init__(self, frames, opened=True):
        self.frames = list(frames)
        self.opened = opened
        self.released = 0

    def isOpened(self):
        return self.opened

    def read(self):
        if not self.frames:
            return False, None
        frame = self.frames.pop(0)
        if frame is None:
            return False, None
        return True, frame

    def release(self):
        self.released += 1
        self.opened = False


@pytest.fixture
def project_root() -> Path:
    return Path(__file__).parent.parent


@pytest.fixture
def detections_blob():
    """One valid detection, one padding row and one below the default threshold"""
    return [
        [0, 15, 0.9, 0.25, 0.5, 0.75, 1.0],
        [-1, 0, 0, 0, 0, 0, 0],
        [0, 3, 0.005, 0.0, 0.0, 0.5, 0.5],
    ]


@pytest.fixture
def fake_backend(detections_blob):
    return FakeBackend(detections_blob)


@pytest.fixture
def detector(fake_backend):
    return SSDDetector(fake_backend, np.array([104, 117, 123], dtype=np.float32))


@pytest.fixture
def image_file(tmp_path) -> Path:
    """A 20x8 (width x height) BGR png"""
    path = tmp_path / "img1.png"
    image = np.full((8, 20, 3), 128, dtype=np.uint8)
    assert cv2.imwrite(str(path), image)
    return path
