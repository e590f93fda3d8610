"""
OpenCV helpers for decoding, resizing and encoding images
"""

import logging
import math
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def load_image(path: str) -> Optional[np.ndarray]:
    """Decode an image as 3-channel BGR with EXIF orientation applied.

    cv2.imread with IMREAD_COLOR rotates according to the EXIF orientation
    tag. Formats imread cannot decode (animated GIF on older OpenCV builds)
    fall back to reading the first frame through VideoCapture.
    """
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is not None:
        return img

    cap = cv2.VideoCapture(path)
    try:
        ok, frame = cap.read()
    finally:
        cap.release()
    if ok and frame is not None:
        logger.debug("Decoded first frame via VideoCapture: %s", path)
        return frame
    return None


def read_channel_count(path: str) -> int:
    """Number of channels stored in the file (4 means alpha is present)"""
    raw = cv2.imread(path, cv2.IMREAD_UNCHANGED)
    if raw is None:
        return 3
    return 1 if raw.ndim == 2 else raw.shape[2]


def resize_exact(img: np.ndarray, width: int, height: int) -> np.ndarray:
    h, w = img.shape[:2]
    interpolation = cv2.INTER_AREA if width * height <= w * h else cv2.INTER_CUBIC
    return cv2.resize(img, (width, height), interpolation=interpolation)


def fit_inside(img: np.ndarray, max_width: int, max_height: int) -> np.ndarray:
    """Scale down to fit the box, preserving aspect ratio; never enlarges"""
    h, w = img.shape[:2]
    scale = min(max_width / w, max_height / h, 1.0)
    if scale >= 1.0:
        return img
    new_w = max(1, round(w * scale))
    new_h = max(1, round(h * scale))
    return cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)


def cover_crop(img: np.ndarray, width: int, height: int) -> np.ndarray:
    """Scale down to cover the box, then crop the center.

    Never enlarges: a side shorter than the box stays at its own length, so
    the result is at most width x height.
    """
    h, w = img.shape[:2]
    scale = min(max(width / w, height / h), 1.0)
    if scale < 1.0:
        scaled_w = max(min(width, w), math.ceil(w * scale))
        scaled_h = max(min(height, h), math.ceil(h * scale))
        img = resize_exact(img, scaled_w, scaled_h)
    h, w = img.shape[:2]
    crop_w = min(width, w)
    crop_h = min(height, h)
    x = (w - crop_w) // 2
    y = (h - crop_h) // 2
    return img[y : y + crop_h, x : x + crop_w]


def write_jpeg(
    path: str, img: np.ndarray, quality: int, progressive: bool = True
) -> Tuple[int, int]:
    """Encode ``img`` as JPEG and return its (width, height).

    Raises:
        IOError: If OpenCV could not encode or write the file
    """
    params = [cv2.IMWRITE_JPEG_QUALITY, int(quality)]
    if progressive:
        params += [cv2.IMWRITE_JPEG_PROGRESSIVE, 1]
    if not cv2.imwrite(path, img, params):
        raise IOError(f"Failed to write JPEG: {path}")
    h, w = img.shape[:2]
    return w, h
