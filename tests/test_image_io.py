from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from camrig.core.image_io import decode_image, encode_png, to_gray_u8
from camrig.errors import DecodeError


def test_png_encode_decode_roundtrip() -> None:
    rng = np.random.default_rng(0)
    img = rng.integers(0, 256, size=(24, 32, 3), dtype=np.uint8)
    out = decode_image(encode_png(img))
    assert out.shape == (24, 32, 3)
    assert out.dtype == np.uint8
    assert np.array_equal(out, img)


def test_decode_pillow_written_gray_image() -> None:
    arr = (np.arange(64, dtype=np.uint8).reshape(8, 8) * 4) % 255
    buf = io.BytesIO()
    Image.fromarray(arr, mode="L").save(buf, format="PNG")
    out = decode_image(buf.getvalue())
    assert out.shape == (8, 8, 3)
    assert np.array_equal(to_gray_u8(out), arr)


def test_decode_rejects_empty_and_garbage() -> None:
    with pytest.raises(DecodeError):
        decode_image(b"")
    with pytest.raises(DecodeError):
        decode_image(b"not an image at all")


def test_to_gray_u8_shapes() -> None:
    assert to_gray_u8(np.zeros((4, 5), dtype=np.uint8)).shape == (4, 5)
    assert to_gray_u8(np.zeros((4, 5, 3), dtype=np.uint8)).shape == (4, 5)
    assert to_gray_u8(np.zeros((4, 5, 4), dtype=np.uint8)).shape == (4, 5)
    with pytest.raises(ValueError):
        to_gray_u8(np.zeros((4, 5, 2), dtype=np.uint8))
