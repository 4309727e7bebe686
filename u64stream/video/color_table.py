"""
16색 컬러 테이블 모듈입니다.

역할:
- 설정의 HEX 색상 16개를 4bit 색상 인덱스 → RGB 매핑으로 보관
- RasterFrame의 인덱스 그리드를 (H, W, 3) RGB 배열로 변환

사용 예시:
    >>> table = ColorTable.from_hex(config.palette.colors)
    >>> rgb = table.to_rgb(frame)
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from u64stream.video import RasterFrame

COLOR_COUNT = 16

# 장치 기본 팔레트
DEFAULT_PALETTE: tuple[str, ...] = (
    "#000000",  # black
    "#FFFFFF",  # white
    "#9F4E44",  # red
    "#6ABFC6",  # cyan
    "#A057A3",  # purple
    "#5CAB5E",  # green
    "#50459B",  # blue
    "#C9D487",  # yellow
    "#A1683C",  # orange
    "#6D5412",  # brown
    "#CB7E75",  # light red
    "#626262",  # dark grey
    "#898989",  # grey
    "#9AE29B",  # light green
    "#887ECB",  # light blue
    "#ADADAD",  # light grey
)


def hex_to_rgb(hex_color: str) -> tuple[int, int, int]:
    """
    "#RRGGBB" 문자열을 (R, G, B) 튜플로 변환합니다.

    에러:
        ValueError: 형식이 올바르지 않을 때
    """
    value = hex_color.lstrip("#")
    if len(value) != 6:
        raise ValueError(f"색상은 #RRGGBB 형식이어야 합니다. 입력값: '{hex_color}'")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


class ColorTable:
    """4bit 색상 인덱스 → RGB 매핑입니다. 스트림 세션 동안 읽기 전용입니다."""

    def __init__(self, colors: Sequence[tuple[int, int, int]]) -> None:
        if len(colors) != COLOR_COUNT:
            raise ValueError(
                f"컬러 테이블은 {COLOR_COUNT}개 색상이 필요합니다. 입력: {len(colors)}개"
            )
        lut = np.array(colors, dtype=np.uint8).reshape(COLOR_COUNT, 3)
        lut.flags.writeable = False
        self._lut = lut

    @classmethod
    def from_hex(cls, hex_colors: Sequence[str]) -> "ColorTable":
        return cls([hex_to_rgb(c) for c in hex_colors])

    @classmethod
    def default(cls) -> "ColorTable":
        return cls.from_hex(DEFAULT_PALETTE)

    @property
    def lut(self) -> np.ndarray:
        """(16, 3) uint8 룩업 테이블"""
        return self._lut

    def __getitem__(self, index: int) -> tuple[int, int, int]:
        r, g, b = self._lut[index & 0x0F]
        return int(r), int(g), int(b)

    def to_rgb(self, frame: RasterFrame) -> np.ndarray:
        """RasterFrame을 (height, width, 3) uint8 RGB 배열로 변환합니다."""
        return self._lut[frame.pixels & 0x0F]
