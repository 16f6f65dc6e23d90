import numpy as np
import pytest

from qr_live.interfaces import RasterFrame
from qr_live.raster import FrameBuffer, to_gray, to_rgb_array


class _ArrayLike:
    def __init__(self, data):
        self._data = data

    def tolist(self):
        return self._data


def test_to_rgb_array_expands_grayscale_lists() -> None:
    rgb = to_rgb_array([[0, 255], [10, 20]])

    assert rgb.shape == (2, 2, 3)
    assert rgb.dtype == np.uint8
    assert rgb[0, 1].tolist() == [255, 255, 255]


def test_to_rgb_array_supports_array_like_and_tuple_rows() -> None:
    assert to_rgb_array(_ArrayLike([[1, 2], [3, 4]]))[1, 0].tolist() == [3, 3, 3]
    assert to_rgb_array(((1, 2), (3, 4)))[0, 1].tolist() == [2, 2, 2]


def test_to_rgb_array_drops_alpha_channel() -> None:
    rgba = np.zeros((4, 5, 4), dtype=np.uint8)
    rgba[..., 3] = 255
    rgba[..., 0] = 7

    rgb = to_rgb_array(rgba)

    assert rgb.shape == (4, 5, 3)
    assert rgb[0, 0].tolist() == [7, 0, 0]


def test_to_rgb_array_rescales_high_bit_depth() -> None:
    raw = np.array([[0, 2048], [4095, 1024]], dtype=np.uint16)

    rgb = to_rgb_array(raw)

    assert rgb[1, 0, 0] == 255
    assert rgb[0, 0, 0] == 0


def test_to_rgb_array_rejects_empty_and_ragged_frames() -> None:
    with pytest.raises(ValueError, match="empty"):
        to_rgb_array([])
    with pytest.raises(ValueError, match="equal length"):
        to_rgb_array([[1.0], [1.0, 2.0]])
    with pytest.raises(TypeError):
        to_rgb_array(42)


def test_to_gray_uses_luma_weights() -> None:
    pixels = np.zeros((1, 3, 3), dtype=np.uint8)
    pixels[0, 0] = [255, 255, 255]
    pixels[0, 1] = [255, 0, 0]

    gray = to_gray(pixels)

    assert gray.shape == (1, 3)
    assert gray[0, 0] == 255
    assert gray[0, 1] == 76
    assert gray[0, 2] == 0


def test_frame_buffer_reuses_storage_for_same_resolution() -> None:
    buffer = FrameBuffer()
    buffer.load(RasterFrame(pixels=np.zeros((4, 6, 3), dtype=np.uint8), timestamp_s=1.0))
    storage = buffer.pixels

    buffer.load(RasterFrame(pixels=np.full((4, 6, 3), 9, dtype=np.uint8), timestamp_s=2.0))

    assert buffer.pixels is storage
    assert int(buffer.pixels[0, 0, 0]) == 9
    assert buffer.timestamp_s == 2.0


def test_frame_buffer_tracks_resolution_changes() -> None:
    buffer = FrameBuffer()
    buffer.load(RasterFrame(pixels=np.zeros((4, 6, 3), dtype=np.uint8), timestamp_s=1.0))
    assert (buffer.width, buffer.height) == (6, 4)

    buffer.load(RasterFrame(pixels=np.zeros((10, 3, 3), dtype=np.uint8), timestamp_s=2.0))

    assert (buffer.width, buffer.height) == (3, 10)


def test_frame_buffer_empty_access_raises() -> None:
    buffer = FrameBuffer()

    assert buffer.is_empty
    assert (buffer.width, buffer.height) == (0, 0)
    with pytest.raises(ValueError, match="empty"):
        _ = buffer.pixels
