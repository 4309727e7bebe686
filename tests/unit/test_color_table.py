"""
ColorTable 단위 테스트
"""

from __future__ import annotations

import numpy as np
import pytest

from u64stream.video import RasterFrame, VideoMode
from u64stream.video.color_table import DEFAULT_PALETTE, ColorTable, hex_to_rgb


def test_hex_to_rgb():
    assert hex_to_rgb("#9F4E44") == (0x9F, 0x4E, 0x44)
    with pytest.raises(ValueError):
        hex_to_rgb("#FFF")


def test_default_table_entries():
    table = ColorTable.default()
    assert table[0] == (0, 0, 0)
    assert table[1] == (255, 255, 255)
    assert table[15] == hex_to_rgb(DEFAULT_PALETTE[15])
    assert table.lut.shape == (16, 3)


def test_wrong_color_count_rejected():
    with pytest.raises(ValueError):
        ColorTable([(0, 0, 0)] * 15)


def test_lut_is_read_only():
    with pytest.raises(ValueError):
        ColorTable.default().lut[0, 0] = 1


def test_to_rgb_maps_indices():
    pixels = np.zeros((240, 384), dtype=np.uint8)
    pixels[0, 0] = 1
    pixels[239, 383] = 6
    frame = RasterFrame(frame_id=0, timestamp_ns=0, mode=VideoMode.NTSC, pixels=pixels)

    table = ColorTable.default()
    rgb = table.to_rgb(frame)
    assert rgb.shape == (240, 384, 3)
    assert rgb.dtype == np.uint8
    assert tuple(rgb[0, 0]) == table[1]
    assert tuple(rgb[0, 1]) == table[0]
    assert tuple(rgb[239, 383]) == table[6]
