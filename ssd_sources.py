"""
Frame sources for the detection loop: still images, video files and RTSP
camera streams, all read through OpenCV.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Tuple

import cv2
import numpy as np

from ssd_errors import ConfigError, SourceError, UnknownFileTypeError
from ssd_logging import get_logger

logger = get_logger(__name__)

FILE_TYPES = ("image", "video")
RTSP_SCHEME = "rtsp"
DEFAULT_STREAM_PATH = "/h264/ch1/sub/av_stream"


def classify_entry(entry: str, file_type: str) -> str:
    """Return 'rtsp', 'image' or 'video' for one list file entry"""
    if entry.split(":", 1)[0] == RTSP_SCHEME:
        return RTSP_SCHEME
    if file_type not in FILE_TYPES:
        raise UnknownFileTypeError(f"Unknown file_type: {file_type}")
    return file_type


def read_image(path: str) -> np.ndarray:
    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if image is None or image.size == 0:
        raise SourceError(f"Unable to decode image {path}")
    return image


class VideoSource:
    """Sequential reader over a video file"""

    def __init__(self, path: str):
        self.path = str(path)
        self.cap = cv2.VideoCapture(self.path)
        if not self.cap.isOpened():
            self.cap.release()
            raise SourceError(f"Failed to open video: {self.path}")

    def __iter__(self) -> Iterator[Tuple[int, np.ndarray]]:
        frame_count = 0
        while True:
            success, frame = self.cap.read()
            if not success:
                break
            if frame is None or frame.size == 0:
                raise SourceError(f"Error when read frame {frame_count} of {self.path}")
            yield frame_count, frame
            frame_count += 1

    def release(self) -> None:
        if self.cap is not None and self.cap.isOpened():
            self.cap.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


@dataclass
class CameraConfig:
    """Credentials and address of an RTSP camera"""
    username: str
    password: str
    ip: str
    path: str = DEFAULT_STREAM_PATH

    @property
    def rtsp_url(self) -> str:
        return f"{RTSP_SCHEME}://{self.username}:{self.password}@{self.ip}{self.path}"


def load_camera_config(path: str) -> CameraConfig:
    """Read username, password and ip, the first three whitespace-separated tokens"""
    try:
        tokens = Path(path).read_text(encoding="utf-8").split()
    except OSError as e:
        raise ConfigError(f"Unable to read camera config {path}: {e}")
    if len(tokens) < 3:
        raise ConfigError(
            f"Camera config {path} needs username, password and ip, got {len(tokens)} item(s)")
    username, password, ip = tokens[:3]
    logger.debug(f"Camera config: user={username} ip={ip}")
    return CameraConfig(username=username, password=password, ip=ip)


class RTSPStream:
    """RTSP camera stream with reconnect on empty reads"""

    def __init__(self, source: str, reconnect_attempts: int = 3, reconnect_interval: float = 1.0):
        self.source = source
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_interval = reconnect_interval
        self.cap: Optional[cv2.VideoCapture] = None

    def open(self) -> None:
        logger.info("opening the rtsp stream ...")
        self.cap = cv2.VideoCapture(self.source)
        if not self.cap.isOpened():
            self.cap.release()
            self.cap = None
            raise SourceError(f"Can't open the stream: {self.source}")

    def _read(self) -> Optional[np.ndarray]:
        success, frame = self.cap.read()
        if not success or frame is None or frame.size == 0:
            return None
        return frame

    def get_frame(self) -> Optional[np.ndarray]:
        """Read one frame, reconnecting when the stream returns nothing"""
        if self.cap is None:
            self.open()

        frame = self._read()
        attempt = 0
        while frame is None and attempt < self.reconnect_attempts:
            attempt += 1
            logger.warning(
                f"Can't get frame: {self.source}, reconnecting ({attempt}/{self.reconnect_attempts})")
            self.release()
            time.sleep(self.reconnect_interval)
            try:
                self.open()
            except SourceError as e:
                logger.warning(str(e))
                continue
            frame = self._read()

        if frame is None:
            logger.error(f"Can't get frame: {self.source}")
        return frame

    def frames(self, max_frames: Optional[int] = None) -> Iterator[np.ndarray]:
        count = 0
        while max_frames is None or count < max_frames:
            frame = self.get_frame()
            if frame is None:
                return
            yield frame
            count += 1

    def release(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
