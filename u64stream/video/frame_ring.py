"""
래스터 프레임 링 버퍼 모듈입니다.

역할:
- 세션 시작 시 현재 모드 높이로 고정 개수의 프레임 슬롯을 한 번 할당
- 재조립기가 다음 슬롯(writer index + 1)에 디코딩하고 완료 후 게시
- 소비자는 가장 최근 게시된 슬롯만 읽음 (publish-after-complete)

사용 예시:
    >>> ring = FrameRing(capacity=8, mode=VideoMode.PAL)
    >>> slot = ring.next_slot()
    >>> slot[:] = pixels
    >>> frame = ring.publish(time.time_ns())
    >>> latest = ring.latest()
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import numpy as np

from u64stream.video import RASTER_WIDTH, RasterFrame, VideoMode

logger = logging.getLogger(__name__)

# 쓰기 중인 슬롯과 게시 슬롯을 분리하기 위한 최소 슬롯 수
MIN_CAPACITY = 2


class FrameRing:
    """
    고정 용량의 RasterFrame 순환 버퍼입니다.

    불변 조건:
    - writer index는 capacity 모듈로 단조 증가합니다.
    - 쓰기 중인 슬롯은 latest()로 노출되지 않습니다.
      next_slot()은 항상 마지막 게시 슬롯의 다음 슬롯을 반환하고,
      게시 인덱스는 슬롯 쓰기가 끝난 뒤 publish()에서만 갱신됩니다.
    """

    def __init__(self, capacity: int, mode: VideoMode) -> None:
        if capacity < MIN_CAPACITY:
            raise ValueError(
                f"FrameRing 용량은 {MIN_CAPACITY} 이상이어야 합니다. 입력값: {capacity}"
            )

        self._capacity = capacity
        self._mode = mode
        self._slots: Optional[list[np.ndarray]] = [
            np.zeros((mode.height, RASTER_WIDTH), dtype=np.uint8)
            for _ in range(capacity)
        ]
        # 마지막으로 쓰기를 시작한 슬롯 인덱스
        self._write_index = 0
        # 마지막으로 게시 완료된 프레임 (없으면 None)
        self._latest: Optional[RasterFrame] = None
        self._published_count = 0
        self._lock = threading.Lock()

        logger.debug(
            f"FrameRing 할당: capacity={capacity}, mode={mode.name}, "
            f"slot={mode.height}x{RASTER_WIDTH}"
        )

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def mode(self) -> VideoMode:
        return self._mode

    @property
    def height(self) -> int:
        return self._mode.height

    @property
    def write_index(self) -> int:
        return self._write_index

    @property
    def published_count(self) -> int:
        return self._published_count

    @property
    def released(self) -> bool:
        return self._slots is None

    def next_slot(self) -> np.ndarray:
        """
        다음에 쓸 슬롯 배열을 반환합니다 (writer index + 1 mod capacity).

        에러:
            RuntimeError: release() 이후 호출 시
        """
        if self._slots is None:
            raise RuntimeError("해제된 FrameRing에는 쓸 수 없습니다")
        return self._slots[(self._write_index + 1) % self._capacity]

    def publish(self, timestamp_ns: int) -> RasterFrame:
        """
        next_slot()에 쓰기를 마친 슬롯을 최신 프레임으로 게시합니다.

        반환값:
            RasterFrame: 게시된 프레임 (픽셀 배열은 읽기 전용 뷰)
        """
        if self._slots is None:
            raise RuntimeError("해제된 FrameRing에는 게시할 수 없습니다")

        index = (self._write_index + 1) % self._capacity
        view = self._slots[index].view()
        view.flags.writeable = False

        frame = RasterFrame(
            frame_id=self._published_count,
            timestamp_ns=timestamp_ns,
            mode=self._mode,
            pixels=view,
        )
        with self._lock:
            self._write_index = index
            self._latest = frame
            self._published_count += 1
        return frame

    def latest(self) -> Optional[RasterFrame]:
        """가장 최근에 게시 완료된 프레임을 반환합니다. 없으면 None."""
        with self._lock:
            return self._latest

    def release(self) -> bool:
        """
        슬롯 버퍼를 해제합니다. 두 번째 호출부터는 아무것도 하지 않습니다.

        반환값:
            bool: 이번 호출에서 실제로 해제했으면 True
        """
        with self._lock:
            if self._slots is None:
                return False
            self._slots = None
            self._latest = None
        logger.debug(f"FrameRing 해제: mode={self._mode.name}")
        return True
