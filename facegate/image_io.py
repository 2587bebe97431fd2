# facegate/image_io.py
from typing import Optional, Tuple
import numpy as np
import cv2

DEFAULT_MAX_WIDTH = 1024
DEFAULT_MAX_HEIGHT = 1280
DEFAULT_JPEG_QUALITY = 80

def scaled_dimensions(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Fit (width, height) inside the bounds, never upscaling."""
    if width <= 0 or height <= 0:
        raise ValueError("Frame dimensions are invalid")
    scale = min(max_width / width, max_height / height, 1.0)
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))

def encode_frame_jpeg(
    frame_bgr: np.ndarray,
    max_width: int = DEFAULT_MAX_WIDTH,
    max_height: int = DEFAULT_MAX_HEIGHT,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> bytes:
    """
    HxWx3 BGR uint8 -> JPEG bytes, downsampled to fit max_width x max_height.
    """
    if frame_bgr is None or frame_bgr.ndim < 2:
        raise ValueError("Frame is empty")
    h, w = frame_bgr.shape[:2]
    out_w, out_h = scaled_dimensions(w, h, max_width, max_height)
    if (out_w, out_h) != (w, h):
        frame_bgr = cv2.resize(frame_bgr, (out_w, out_h), interpolation=cv2.INTER_AREA)
    ok, buffer = cv2.imencode(".jpg", frame_bgr, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    if not ok:
        raise ValueError("Failed to encode camera frame")
    return buffer.tobytes()

def decode_image_bytes_to_bgr(data: bytes) -> Optional[np.ndarray]:
    """Bytes (jpg/png/etc) -> HxWx3 BGR uint8, or None if undecodable."""
    if not data:
        return None
    arr = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)
