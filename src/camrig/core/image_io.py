from __future__ import annotations

import io

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from camrig.errors import DecodeError


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode an encoded image container into a uint8 pixel buffer (H,W,3 BGR).

    OpenCV is the primary backend. Pillow is used when the OpenCV build lacks
    a codec (some webp/tiff variants). Raises DecodeError when neither can read
    the bytes.
    """
    if not data:
        raise DecodeError("empty frame buffer")
    buf = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if img is not None:
        return img

    try:
        with Image.open(io.BytesIO(data)) as im:
            rgb = np.asarray(im.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeError(f"cannot decode {len(data)} bytes: {e}") from e
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def encode_png(img: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", np.asarray(img))
    if not ok:
        raise ValueError("PNG encoding failed")
    return buf.tobytes()


def to_gray_u8(img: np.ndarray) -> np.ndarray:
    img = np.asarray(img)
    if img.ndim == 3 and img.shape[2] == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    elif img.ndim == 3 and img.shape[2] == 4:
        img = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    elif img.ndim != 2:
        raise ValueError(f"unsupported image shape {img.shape}")
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    return img
