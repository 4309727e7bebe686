"""
오디오 재생 싱크 모듈입니다.

역할:
- 재생 장치 클래스를 단일 play(samples) 인터페이스로 추상화
- A (blocking): PortAudio RawOutputStream에 블로킹 write
- B (callback): 제한 크기 큐에 적재, PortAudio 콜백이 큐에서 꺼내 재생
- C (none): 샘플을 버림 (헤드리스 / 테스트)

sounddevice는 실제 장치를 여는 open() 시점에만 임포트합니다.

사용 예시:
    >>> sink = create_playback_sink(config.audio)
    >>> sink.open()
    >>> sink.play(samples)
    >>> sink.close()
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

from u64stream.audio import CHANNELS, SAMPLE_RATE, SAMPLE_WIDTH_BYTES
from u64stream.config.schema import AudioConfig

logger = logging.getLogger(__name__)

_FRAME_BYTES = CHANNELS * SAMPLE_WIDTH_BYTES


class PlaybackError(Exception):
    """재생 장치 열기/쓰기 실패 시 발생하는 예외"""
    pass


class PlaybackSink(ABC):
    """오디오 재생 장치의 공통 인터페이스입니다."""

    name = "sink"

    def open(self) -> None:
        """장치를 엽니다. 기본 구현은 아무것도 하지 않습니다."""

    @abstractmethod
    def play(self, samples: bytes) -> None:
        """인터리브 16bit 스테레오 PCM 블록을 재생합니다."""

    def close(self) -> None:
        """장치를 닫습니다. 여러 번 호출해도 안전해야 합니다."""


class NullSink(PlaybackSink):
    """샘플을 버리는 재생 싱크입니다 (장치 클래스 C)."""

    name = "none"

    def __init__(self) -> None:
        self.blocks_played = 0

    def play(self, samples: bytes) -> None:
        self.blocks_played += 1


class RawStreamSink(PlaybackSink):
    """
    블로킹 write 방식 재생 싱크입니다 (장치 클래스 A).

    play()는 장치 버퍼에 여유가 생길 때까지 호출 스레드를 블로킹하므로
    수신 루프의 속도가 장치 재생 속도에 맞춰집니다.
    """

    name = "blocking"

    def __init__(self, sample_rate: int = SAMPLE_RATE, device_name: Optional[str] = None) -> None:
        self._sample_rate = sample_rate
        self._device_name = device_name
        self._stream: Any = None
        self._device_errors: tuple = ()

    def open(self) -> None:
        import sounddevice as sd

        self._device_errors = (sd.PortAudioError,)
        try:
            self._stream = sd.RawOutputStream(
                samplerate=self._sample_rate,
                channels=CHANNELS,
                dtype="int16",
                device=self._device_name,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise PlaybackError(f"재생 장치 열기 실패: {exc}") from exc

        logger.info(
            f"블로킹 재생 장치 시작: rate={self._sample_rate}, "
            f"device={self._device_name or 'default'}, latency={self._stream.latency:.3f}s"
        )

    def play(self, samples: bytes) -> None:
        if self._stream is None:
            raise PlaybackError("재생 장치가 열려있지 않습니다")
        try:
            underflowed = self._stream.write(bytes(samples))
        except self._device_errors as exc:
            raise PlaybackError(f"재생 장치 쓰기 실패: {exc}") from exc
        if underflowed:
            logger.debug("재생 버퍼 언더플로우")

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except self._device_errors as exc:
            logger.warning(f"블로킹 재생 장치 종료 중 오류: {exc}")
            return
        logger.info("블로킹 재생 장치 종료")


class CallbackStreamSink(PlaybackSink):
    """
    콜백 방식 재생 싱크입니다 (장치 클래스 B).

    play()는 블록을 큐에 넣고 즉시 반환합니다. 큐가 가득 차면 가장 오래된
    블록을 버립니다. PortAudio 콜백은 요청한 바이트 수만큼 큐에서 꺼내고,
    부족한 부분은 무음으로 채웁니다.
    """

    name = "callback"

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        device_name: Optional[str] = None,
        queue_blocks: int = 64,
    ) -> None:
        self._sample_rate = sample_rate
        self._device_name = device_name
        self._queue: deque[bytes] = deque(maxlen=queue_blocks)
        self._lock = threading.Lock()
        # 이전 콜백에서 일부만 소비한 블록의 나머지
        self._pending = b""
        self._stream: Any = None
        self.dropped_blocks = 0
        self._device_errors: tuple = ()

    @property
    def queued_blocks(self) -> int:
        with self._lock:
            return len(self._queue)

    def open(self) -> None:
        import sounddevice as sd

        self._device_errors = (sd.PortAudioError,)
        try:
            self._stream = sd.RawOutputStream(
                samplerate=self._sample_rate,
                channels=CHANNELS,
                dtype="int16",
                device=self._device_name,
                callback=self._callback,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise PlaybackError(f"재생 장치 열기 실패: {exc}") from exc

        logger.info(
            f"콜백 재생 장치 시작: rate={self._sample_rate}, "
            f"device={self._device_name or 'default'}, queue={self._queue.maxlen}"
        )

    def play(self, samples: bytes) -> None:
        with self._lock:
            if len(self._queue) == self._queue.maxlen:
                self.dropped_blocks += 1
            self._queue.append(bytes(samples))

    def pull(self, size: int) -> bytes:
        """
        큐에서 정확히 size 바이트를 꺼냅니다. 부족하면 무음(0)으로 채웁니다.

        파라미터:
            size: 요청 바이트 수 (프레임 크기의 배수)

        반환값:
            bytes: 길이 size의 PCM 데이터
        """
        out = bytearray()
        with self._lock:
            if self._pending:
                out += self._pending[:size]
                self._pending = self._pending[size:]
            while len(out) < size and self._queue:
                block = self._queue.popleft()
                need = size - len(out)
                out += block[:need]
                self._pending = block[need:]
        if len(out) < size:
            out += bytes(size - len(out))
        return bytes(out)

    def _callback(self, outdata, frames: int, time_info, status) -> None:
        """PortAudio 오디오 스레드에서 호출되는 콜백"""
        if status:
            logger.debug(f"재생 콜백 상태: {status}")
        outdata[:] = self.pull(frames * _FRAME_BYTES)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except self._device_errors as exc:
                logger.warning(f"콜백 재생 장치 종료 중 오류: {exc}")
            else:
                logger.info(f"콜백 재생 장치 종료: dropped_blocks={self.dropped_blocks}")
        with self._lock:
            self._queue.clear()
            self._pending = b""


def create_playback_sink(config: AudioConfig) -> PlaybackSink:
    """
    설정의 output_device 값에 해당하는 재생 싱크를 생성합니다.

    파라미터:
        config: 오디오 설정 (output_device, device_name, sample_rate, queue_blocks)

    반환값:
        PlaybackSink: 열리지 않은 재생 싱크
    """
    device_name = config.device_name or None
    if config.output_device == "blocking":
        return RawStreamSink(config.sample_rate, device_name)
    if config.output_device == "callback":
        return CallbackStreamSink(config.sample_rate, device_name, config.queue_blocks)
    return NullSink()
