#!/usr/bin/env python3
"""
Print the input/output structure of an SSD model before running detection
"""

import argparse
import sys
from typing import List, Optional

from ssd_detector import OpenVINOBackend, load_backend
from ssd_errors import SSDDetectError
from ssd_logging import get_logger

logger = get_logger(__name__)


def describe_ports(ports, kind: str) -> None:
    for i, port in enumerate(ports):
        logger.info(f"  {kind} {i}: {port.any_name}")
        logger.info(f"    Partial shape: {port.partial_shape}")
        logger.info(f"    Element type: {port.element_type}")
        logger.info(f"    Is dynamic: {port.partial_shape.is_dynamic}")


def inspect_model(model_file: str, weights_file: Optional[str] = None, backend: str = "auto",
                  device: str = "CPU") -> None:
    logger.info(f"Loading model: {model_file}")
    net = load_backend(model_file, weights_file, backend=backend, device=device)

    channels, height, width = net.input_shape
    logger.info(f"Input shape: channels={channels} height={height} width={width}")

    if isinstance(net, OpenVINOBackend):
        logger.info("Input information:")
        describe_ports(net.ov_model.inputs, "Input")
        logger.info("Output information:")
        describe_ports(net.ov_model.outputs, "Output")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Inspect an SSD model')
    parser.add_argument('model_file', help='Network definition (.prototxt, .xml or .onnx)')
    parser.add_argument('weights_file', nargs='?', help='Network weights (.caffemodel or .bin)')
    parser.add_argument('--backend', choices=['auto', 'caffe', 'openvino'], default='auto')
    parser.add_argument('--device', choices=['CPU', 'GPU', 'AUTO'], default='CPU')
    args = parser.parse_args(argv)

    try:
        inspect_model(args.model_file, args.weights_file, backend=args.backend, device=args.device)
    except SSDDetectError as e:
        logger.error(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
