"""
비디오 스트림 모듈 패키지

공통 데이터 타입 정의:
- VideoMode: 비디오 타이밍 모드 (PAL/NTSC)
- StreamState: 비디오 재조립기 상태
- RasterFrame: 디코딩 완료된 색상 인덱스 프레임
- ModeMismatch: 모드 불일치 제어 신호
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np

# 래스터 고정 폭 (픽셀)
RASTER_WIDTH = 384
# 모드별 래스터 높이 (라인)
PAL_HEIGHT = 272
NTSC_HEIGHT = 240


class VideoMode(Enum):
    """비디오 타이밍 모드입니다. 값은 프레임 높이(라인 수)입니다."""
    PAL = PAL_HEIGHT
    NTSC = NTSC_HEIGHT

    @property
    def height(self) -> int:
        return self.value

    @classmethod
    def from_end_line(cls, end_line: int) -> "VideoMode":
        """프레임 종료 라인에서 모드를 판정합니다. 272면 PAL, 그 외는 NTSC."""
        return cls.PAL if end_line == PAL_HEIGHT else cls.NTSC

    @classmethod
    def from_name(cls, name: str) -> "VideoMode":
        """설정 문자열("pal" | "ntsc")을 VideoMode로 변환합니다."""
        return cls[name.upper()]


class StreamState(Enum):
    """비디오 재조립기 세션 상태입니다."""
    IDLE = "idle"
    LISTENING = "listening"
    ACCUMULATING = "accumulating"
    FRAME_READY = "frame_ready"
    RESTARTING = "restarting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RasterFrame:
    """
    디코딩 완료된 래스터 프레임입니다. 게시 이후에는 읽기 전용입니다.

    필드:
        frame_id: 세션 내 프레임 순번 (0부터 시작)
        timestamp_ns: 디코딩 완료 시각 (time.time_ns() 기준)
        mode: 프레임의 비디오 모드
        pixels: (height, 384) uint8 배열, 각 원소는 4bit 색상 인덱스
    """
    frame_id: int
    timestamp_ns: int
    mode: VideoMode
    pixels: np.ndarray

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


@dataclass(frozen=True)
class ModeMismatch:
    """
    수신 스트림의 프레임 높이가 현재 가정한 모드와 다를 때의 제어 신호입니다.

    필드:
        previous_mode: 세션이 가정하고 있던 모드
        detected_mode: 스트림에서 감지된 모드
        end_line: 마지막 패킷에서 계산한 종료 라인 ((line_number + 4) & 0xFFF)
    """
    previous_mode: VideoMode
    detected_mode: VideoMode
    end_line: int
