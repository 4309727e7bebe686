"""
스트림 세션 진단 카운터 모듈입니다.

역할:
- 비디오/오디오 수신 루프가 갱신하는 단조 증가 카운터 관리
- 수신 바이트, 프레임 수, 패킷 손실, 샘플 수, FPS, 오디오 레벨 집계
- 표시 계층이 폴링할 수 있는 스냅샷 제공

카운터는 세션 시작 시에만 reset() 됩니다.

사용 예시:
    >>> counters = SessionCounters()
    >>> counters.add_video_bytes(780)
    >>> snapshot = counters.snapshot()
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

_MEGABYTE = 1024 * 1024


@dataclass
class CounterSnapshot:
    """세션 카운터의 특정 시점 복사본입니다."""
    video_received_bytes: int = 0
    video_frames: int = 0
    video_packet_loss: int = 0
    fps: float = 0.0
    video_mode: str = "PAL"
    mode_changes: int = 0
    audio_received_bytes: int = 0
    audio_samples: int = 0
    audio_rms: float = 0.0
    audio_peak: float = 0.0
    updated_at_ns: int = 0

    @property
    def ms_per_frame(self) -> float:
        """프레임당 소요 시간 (ms). FPS가 없으면 0.0"""
        return 1000.0 / self.fps if self.fps > 0 else 0.0

    @property
    def video_received_mb(self) -> int:
        return self.video_received_bytes // _MEGABYTE

    @property
    def audio_received_mb(self) -> int:
        return self.audio_received_bytes // _MEGABYTE


class SessionCounters:
    """
    세션 진단 카운터 저장소입니다.

    비디오 루프와 오디오 루프가 각자 자신의 카운터만 갱신하며,
    Supervisor와 표시 계층은 snapshot()으로만 읽습니다.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data = CounterSnapshot()

    def reset(self, video_mode: str = "PAL") -> None:
        """세션 시작 시 모든 카운터를 0으로 초기화합니다."""
        with self._lock:
            self._data = CounterSnapshot(video_mode=video_mode, updated_at_ns=time.time_ns())

    # =========================================================================
    # 비디오
    # =========================================================================

    def add_video_bytes(self, count: int) -> None:
        with self._lock:
            self._data.video_received_bytes += count

    def add_packet_loss(self) -> None:
        with self._lock:
            self._data.video_packet_loss += 1

    def add_video_frame(self, fps: float | None = None) -> None:
        """프레임 게시를 기록합니다. fps가 주어지면 FPS 추정치도 갱신합니다."""
        with self._lock:
            self._data.video_frames += 1
            if fps is not None:
                self._data.fps = fps
            self._data.updated_at_ns = time.time_ns()

    def set_video_mode(self, mode_name: str) -> None:
        with self._lock:
            self._data.video_mode = mode_name

    def record_mode_change(self, mode_name: str) -> None:
        """모드 변경(비디오 경로 재시작)을 기록합니다."""
        with self._lock:
            self._data.video_mode = mode_name
            self._data.mode_changes += 1
            self._data.fps = 0.0

    def clear_fps(self) -> None:
        with self._lock:
            self._data.fps = 0.0

    # =========================================================================
    # 오디오
    # =========================================================================

    def add_audio_packet(self, received_bytes: int, sample_frames: int) -> None:
        with self._lock:
            self._data.audio_received_bytes += received_bytes
            self._data.audio_samples += sample_frames

    def update_audio_level(self, rms: float, peak: float) -> None:
        with self._lock:
            self._data.audio_rms = rms
            self._data.audio_peak = peak

    # =========================================================================
    # 조회
    # =========================================================================

    def snapshot(self) -> CounterSnapshot:
        """현재 카운터 값의 복사본을 반환합니다."""
        with self._lock:
            d = self._data
            return CounterSnapshot(
                video_received_bytes=d.video_received_bytes,
                video_frames=d.video_frames,
                video_packet_loss=d.video_packet_loss,
                fps=d.fps,
                video_mode=d.video_mode,
                mode_changes=d.mode_changes,
                audio_received_bytes=d.audio_received_bytes,
                audio_samples=d.audio_samples,
                audio_rms=d.audio_rms,
                audio_peak=d.audio_peak,
                updated_at_ns=d.updated_at_ns,
            )
