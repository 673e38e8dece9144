"""Image preprocessing pipeline.

Decodes encoded image bytes with OpenCV and converts them into the
normalised NCHW float32 tensor expected by ImageNet classifiers.
"""

from __future__ import annotations

import cv2
import numpy as np
from numpy.typing import NDArray

from imagevision.errors import InferenceError

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def decode_image(image_bytes: bytes) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format OpenCV can decode).

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        InferenceError: If the bytes are empty or cannot be decoded.
    """
    if not image_bytes:
        raise InferenceError("Image data is empty")

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    bgr = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if bgr is None:
        raise InferenceError("Image data could not be decoded")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def preprocess_for_classification(image: NDArray[np.uint8], input_size: int) -> NDArray[np.float32]:
    """Prepare an RGB image for an ImageNet classifier.

    Args:
        image: HxWx3 RGB uint8 array.
        input_size: Edge length of the square model input.

    Returns:
        1x3xSxS float32 tensor normalised with ImageNet mean/std.
    """
    resized = cv2.resize(image, (input_size, input_size), interpolation=cv2.INTER_LINEAR)
    scaled = resized.astype(np.float32) / 255.0
    normalised = (scaled - IMAGENET_MEAN) / IMAGENET_STD
    chw = np.transpose(normalised, (2, 0, 1))
    return np.expand_dims(chw, axis=0).astype(np.float32)
