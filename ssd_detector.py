#!/usr/bin/env python3
"""
SSD Detector
Loads an SSD network through OpenCV DNN (Caffe prototxt + caffemodel) or
OpenVINO (IR .xml/.bin or ONNX), preprocesses frames into the NCHW blob the
network expects and parses the DetectionOutput blob into detection records.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np
import openvino as ov
import requests

from ssd_errors import ConfigError, DetectionError, ModelLoadError
from ssd_logging import get_logger

logger = get_logger(__name__)

# [image_id, label, score, xmin, ymin, xmax, ymax]
DETECTION_SIZE = 7
INVALID_IMAGE_ID = -1

DEFAULT_MEAN_VALUE = "104,117,123"
DEFAULT_INPUT_SHAPE = (3, 300, 300)

CAFFE_SUFFIXES = {".prototxt"}
OPENVINO_SUFFIXES = {".xml", ".onnx"}


@dataclass
class Detection:
    """One row of the DetectionOutput blob, coordinates normalized to 0-1"""
    image_id: float
    label: int
    score: float
    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @classmethod
    def from_row(cls, row: Sequence[float]) -> "Detection":
        image_id, label, score, xmin, ymin, xmax, ymax = (float(v) for v in row[:DETECTION_SIZE])
        return cls(image_id, int(label), score, xmin, ymin, xmax, ymax)

    def to_pixels(self, width: int, height: int) -> Tuple[int, int, int, int]:
        """Scale to pixel coordinates, truncating toward zero"""
        return (
            int(self.xmin * width),
            int(self.ymin * height),
            int(self.xmax * width),
            int(self.ymax * height),
        )


def parse_detection_output(blob: np.ndarray) -> List[Detection]:
    """Parse a DetectionOutput blob of shape (1, 1, N, 7) or any shape
    holding N*7 floats.

    Rows whose image_id is -1 are padding and are skipped.
    """
    data = np.asarray(blob, dtype=np.float32)
    if data.size % DETECTION_SIZE != 0:
        raise DetectionError(
            f"Detection output of shape {data.shape} is not a list of {DETECTION_SIZE}-float records")

    detections = []
    for row in data.reshape(-1, DETECTION_SIZE):
        if row[0] == INVALID_IMAGE_ID:
            continue
        detections.append(Detection.from_row(row))
    return detections


def filter_detections(detections: List[Detection], threshold: float) -> List[Detection]:
    return [d for d in detections if d.score >= threshold]


def parse_mean_value(mean_value: str) -> List[float]:
    values = []
    for item in mean_value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            values.append(float(item))
        except ValueError:
            raise ConfigError(f"Invalid mean value: {item!r}")
    return values


def build_mean(mean_file: Optional[str], mean_value: Optional[str], num_channels: int) -> np.ndarray:
    """
    Build the per-channel mean subtracted from every frame

    Args:
        mean_file: .npy array shaped (C, H, W) or (C,); its global per-channel mean is used
        mean_value: one value, or one value per channel, separated by ','
        num_channels: channel count of the network input

    Returns:
        float32 vector of length num_channels
    """
    if mean_file and mean_value:
        raise ConfigError("Cannot specify mean_file and mean_value at the same time")

    if mean_file:
        try:
            mean_blob = np.load(mean_file)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Unable to read mean file {mean_file}: {e}")
        mean_blob = np.asarray(mean_blob, dtype=np.float32)
        if mean_blob.ndim == 4:
            mean_blob = mean_blob[0]
        if mean_blob.shape[0] != num_channels:
            raise ConfigError(
                "Number of channels of mean file doesn't match input layer: "
                f"{mean_blob.shape[0]} != {num_channels}")
        return mean_blob.reshape(num_channels, -1).mean(axis=1).astype(np.float32)

    if mean_value:
        values = parse_mean_value(mean_value)
        if len(values) == 1:
            values = values * num_channels
        if len(values) != num_channels:
            raise ConfigError(
                f"Specify either 1 mean_value or as many as channels: {num_channels}")
        return np.array(values, dtype=np.float32)

    return np.zeros(num_channels, dtype=np.float32)


def preprocess(image: np.ndarray, input_shape: Tuple[int, int, int], mean: np.ndarray) -> np.ndarray:
    """Convert a frame to the (1, C, H, W) float32 blob of the network

    Color conversion follows the network channel count, the frame is resized
    only when its size differs, then the mean is subtracted per channel.
    """
    num_channels, height, width = input_shape
    img_channels = 1 if image.ndim == 2 else image.shape[2]

    if img_channels == 3 and num_channels == 1:
        sample = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif img_channels == 4 and num_channels == 1:
        sample = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    elif img_channels == 4 and num_channels == 3:
        sample = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    elif img_channels == 1 and num_channels == 3:
        sample = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    else:
        sample = image

    if sample.shape[:2] != (height, width):
        sample = cv2.resize(sample, (width, height))

    sample = sample.astype(np.float32)
    if sample.ndim == 2:
        sample = sample[:, :, np.newaxis]

    sample -= np.asarray(mean, dtype=np.float32).reshape(1, 1, -1)

    # HWC -> CHW, then add batch dimension
    return np.expand_dims(np.transpose(sample, (2, 0, 1)), axis=0)


def read_prototxt_input_shape(prototxt_path: str) -> Tuple[int, int, int]:
    """Read (C, H, W) from the input declaration of a Caffe prototxt

    Accepts `input_shape { dim: ... }`, an Input layer's
    `input_param { shape { dim: ... } }` or four `input_dim:` lines.
    """
    text = Path(prototxt_path).read_text(encoding="utf-8", errors="replace")
    block = (re.search(r"\binput_shape\s*\{([^}]*)\}", text)
             or re.search(r"\binput_param\s*\{\s*shape\s*\{([^}]*)\}", text))
    if block:
        dims = [int(d) for d in re.findall(r"\bdim\s*:\s*(\d+)", block.group(1))]
    else:
        dims = [int(d) for d in re.findall(r"\binput_dim\s*:\s*(\d+)", text)]
    if len(dims) == 4:
        return dims[1], dims[2], dims[3]
    logger.warning(f"No input dims found in {prototxt_path}, assuming {DEFAULT_INPUT_SHAPE}")
    return DEFAULT_INPUT_SHAPE


class CaffeBackend:
    """Caffe SSD network run through OpenCV DNN"""

    def __init__(self, model_file: str, weights_file: str):
        try:
            self.net = cv2.dnn.readNetFromCaffe(model_file, weights_file)
        except cv2.error as e:
            raise ModelLoadError(f"Failed to load Caffe model {model_file}: {e}")
        self.input_shape = read_prototxt_input_shape(model_file)

        out_names = self.net.getUnconnectedOutLayersNames()
        if len(out_names) != 1:
            raise ModelLoadError(f"Network should have exactly one output, got {len(out_names)}")

    def forward(self, blob: np.ndarray) -> np.ndarray:
        self.net.setInput(blob)
        return self.net.forward()


class OpenVINOBackend:
    """SSD network compiled with OpenVINO (IR or ONNX)"""

    def __init__(self, model_file: str, weights_file: Optional[str] = None, device: str = "AUTO",
                 cache_dir: Optional[Path] = None):
        self.core = ov.Core()
        try:
            if weights_file:
                self.ov_model = self.core.read_model(model_file, weights_file)
            else:
                self.ov_model = self.core.read_model(model_file)
        except Exception as e:
            raise ModelLoadError(f"Failed to read OpenVINO model {model_file}: {e}")

        if len(self.ov_model.inputs) != 1:
            raise ModelLoadError("Network should have exactly one input.")
        if len(self.ov_model.outputs) != 1:
            raise ModelLoadError("Network should have exactly one output.")

        input_layer = self.ov_model.input()
        if input_layer.partial_shape.is_dynamic:
            # Fixed batch of 1 at the default SSD geometry
            new_input_shape = [1, *DEFAULT_INPUT_SHAPE]
            logger.info(f"Model has dynamic input shape, reshaping to {new_input_shape}")
            self.ov_model.reshape({input_layer: new_input_shape})

        shape = list(self.ov_model.input().shape)
        if len(shape) != 4:
            raise ModelLoadError(f"Expected NCHW input, got shape {shape}")
        self.input_shape = (int(shape[1]), int(shape[2]), int(shape[3]))

        if device == "AUTO":
            device = self.get_best_device()
        config = {}
        if cache_dir is not None:
            cache_dir.mkdir(parents=True, exist_ok=True)
            config["CACHE_DIR"] = str(cache_dir)

        try:
            logger.info(f"Compiling model for {device} device...")
            self.compiled_model = self.core.compile_model(self.ov_model, device, config)
        except Exception as e:
            if device == "CPU":
                raise ModelLoadError(f"Error compiling model for CPU: {e}")
            logger.warning(f"Error compiling model for {device}: {e}. Falling back to CPU...")
            try:
                self.compiled_model = self.core.compile_model(self.ov_model, "CPU", config)
            except Exception as cpu_e:
                raise ModelLoadError(f"CPU fallback also failed: {cpu_e}")

    def get_best_device(self) -> str:
        """Prefer a GPU device when one is available"""
        available_devices = self.core.available_devices
        logger.debug(f"Available devices: {available_devices}")
        for device in available_devices:
            if "GPU" in device:
                return device
        return "CPU"

    def forward(self, blob: np.ndarray) -> np.ndarray:
        outputs = self.compiled_model(blob)
        return outputs[self.compiled_model.output(0)]


def load_backend(model_file: str, weights_file: Optional[str] = None, backend: str = "auto",
                 device: str = "AUTO", cache_dir: Optional[Path] = None):
    """
    Load the network with the backend matching the model file

    Args:
        model_file: .prototxt (Caffe) or .xml/.onnx (OpenVINO)
        weights_file: .caffemodel, or the .bin next to an IR model
        backend: 'auto', 'caffe' or 'openvino'
        device: OpenVINO device, ignored by the Caffe backend
        cache_dir: OpenVINO compiled model cache
    """
    suffix = Path(model_file).suffix.lower()
    if backend == "auto":
        if suffix in CAFFE_SUFFIXES:
            backend = "caffe"
        elif suffix in OPENVINO_SUFFIXES:
            backend = "openvino"
        else:
            raise ModelLoadError(f"Cannot infer backend from model file: {model_file}")

    if backend == "caffe":
        if not weights_file:
            raise ModelLoadError("Caffe backend needs a weights file")
        net = CaffeBackend(model_file, weights_file)
    elif backend == "openvino":
        net = OpenVINOBackend(model_file, weights_file, device=device, cache_dir=cache_dir)
    else:
        raise ModelLoadError(f"Unknown backend: {backend}")

    num_channels = net.input_shape[0]
    if num_channels not in (1, 3):
        raise ModelLoadError("Input layer should have 1 or 3 channels.")

    logger.info(f"Loaded {backend} network {model_file} with input shape {net.input_shape}")
    return net


def fetch_model_file(path_or_url: str, model_dir: Path) -> str:
    """Return a local path for a model file, downloading http(s) URLs into model_dir"""
    if not re.match(r"^https?://", path_or_url):
        if not Path(path_or_url).exists():
            raise ModelLoadError(f"Model file not found: {path_or_url}")
        return path_or_url

    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    filename = path_or_url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
    target = model_dir / filename

    if target.exists() and target.stat().st_size > 0:
        logger.info(f"Model {target} already exists locally.")
        return str(target)

    logger.info(f"Downloading {path_or_url}")
    try:
        response = requests.get(path_or_url, stream=True, timeout=120)
        response.raise_for_status()

        downloaded = 0
        with open(target, "wb") as f:
            for chunk in response.iter_content(chunk_size=8192):
                if chunk:
                    f.write(chunk)
                    downloaded += len(chunk)
    except requests.RequestException as e:
        if target.exists():
            target.unlink()
        raise ModelLoadError(f"Error downloading model {path_or_url}: {e}")

    if downloaded == 0:
        target.unlink()
        raise ModelLoadError(f"Downloaded file is empty: {path_or_url}")

    logger.info(f"Model downloaded: {target} ({downloaded} bytes)")
    return str(target)


def load_labels(path: str) -> List[str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip()]
    except OSError as e:
        raise ConfigError(f"Unable to read labels file {path}: {e}")


class SSDDetector:
    def __init__(self, backend, mean: np.ndarray):
        """
        Initialize SSD detector

        Args:
            backend: object exposing input_shape (C, H, W) and forward(blob)
            mean: per-channel mean from build_mean()
        """
        self.backend = backend
        self.input_shape = tuple(backend.input_shape)
        self.mean = np.asarray(mean, dtype=np.float32)
        if self.mean.shape != (self.input_shape[0],):
            raise ConfigError(
                f"Mean has {self.mean.size} channels, network expects {self.input_shape[0]}")

    def detect(self, image: np.ndarray) -> List[Detection]:
        """Run the network on one frame, returning every valid detection"""
        blob = preprocess(image, self.input_shape, self.mean)
        output = self.backend.forward(blob)
        return parse_detection_output(output)


def draw_detections(image: np.ndarray, detections: List[Detection],
                    labels: Optional[List[str]] = None) -> np.ndarray:
    """Draw bounding boxes and labels on image"""
    result_image = image.copy()
    if result_image.ndim == 2:
        result_image = cv2.cvtColor(result_image, cv2.COLOR_GRAY2BGR)
    img_h, img_w = result_image.shape[:2]

    rng = np.random.RandomState(42)
    colors = rng.uniform(0, 255, size=(max(len(labels or []), 256), 3))

    for detection in detections:
        x1, y1, x2, y2 = detection.to_pixels(img_w, img_h)
        class_id = detection.label
        if labels and 0 <= class_id < len(labels):
            class_name = labels[class_id]
        else:
            class_name = str(class_id)

        color = tuple(colors[class_id % len(colors)].astype(int).tolist())
        cv2.rectangle(result_image, (x1, y1), (x2, y2), color, 2)

        label = f"{class_name}: {detection.score:.2f}"
        label_size = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.5, 2)[0]
        cv2.rectangle(result_image, (x1, y1 - label_size[1] - 10),
                      (x1 + label_size[0], y1), color, -1)
        cv2.putText(result_image, label, (x1, y1 - 5),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 2)

    return result_image
