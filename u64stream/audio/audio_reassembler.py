"""
UDP 오디오 스트림 수신 모듈입니다.

역할:
- 770 bytes 고정 크기 오디오 데이터그램 검증 (그 외 크기는 폐기)
- 768 bytes 샘플 페이로드를 재생 싱크로 전달
- 녹음 활성 시 동일 페이로드를 스크래치 버퍼로 복사하여 WAV 파일에 기록
- 수신 바이트/샘플 수/오디오 레벨 카운터 갱신

녹음은 관찰자 역할만 합니다. 녹음 쓰기가 실패하면 녹음만 중단되고
재생은 계속됩니다.

사용 예시:
    >>> reassembler = AudioReassembler(config, counters, NullSink())
    >>> reassembler.open()
    >>> reassembler.run()      # 블로킹 (워커 스레드에서 실행)
    >>> reassembler.stop()     # 다른 스레드에서 호출
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from pathlib import Path
from typing import Optional, Union

import numpy as np

from u64stream.audio import SAMPLE_FRAMES_PER_PACKET, AudioBlock
from u64stream.audio.playback_sinks import NullSink, PlaybackError, PlaybackSink
from u64stream.audio.wav_recorder import RecordingError, WavRecorder, default_recording_path
from u64stream.config.schema import AppConfig
from u64stream.metrics.session_counters import SessionCounters
from u64stream.protocol.udp_socket import MAX_DATAGRAM_SIZE, close_socket, open_udp_socket
from u64stream.protocol.wire_codec import (
    AUDIO_PACKET_SIZE,
    AUDIO_PAYLOAD_SIZE,
    InvalidPacketSizeError,
    decode_audio_packet,
)

logger = logging.getLogger(__name__)

# 16bit 최대값
_INT16_MAX = 32767.0


def calculate_levels(samples: bytes) -> tuple[float, float]:
    """
    16bit PCM 블록의 RMS / Peak 레벨을 계산합니다.

    반환값:
        tuple[float, float]: (rms, peak), 각각 0.0~1.0 (1.0 = 풀스케일)
    """
    if len(samples) == 0:
        return 0.0, 0.0
    values = np.frombuffer(samples, dtype="<i2").astype(np.float32)
    rms = float(np.sqrt(np.mean(values ** 2))) / _INT16_MAX
    peak = float(np.max(np.abs(values))) / _INT16_MAX
    return min(1.0, rms), min(1.0, peak)


class AudioReassembler:
    """
    UDP 오디오 데이터그램을 재생/녹음 싱크로 전달하는 클래스입니다.

    스레딩:
        - run()은 워커 스레드에서 블로킹 수신 루프를 실행합니다.
        - stop()과 start_recording()/stop_recording()은 다른 스레드에서 호출됩니다.
    """

    def __init__(
        self,
        config: AppConfig,
        counters: SessionCounters,
        playback_sink: Optional[PlaybackSink] = None,
        sock: Optional[socket.socket] = None,
    ) -> None:
        self._bind_host = config.stream.bind_host
        self._port = config.stream.audio_port
        self._receive_buffer_bytes = config.stream.receive_buffer_bytes
        self._sample_rate = config.audio.sample_rate
        self._recording_dir = config.recording.output_dir
        self._counters = counters
        self._sink: PlaybackSink = playback_sink or NullSink()

        self._socket: Optional[socket.socket] = sock
        self._stop_event = threading.Event()
        self._release_lock = threading.Lock()
        self._opened = False
        self._active = False
        self._released = False
        self._release_count = 0

        # 녹음 상태 (수신 스레드와 제어 스레드가 공유)
        self._recording_lock = threading.Lock()
        self._recorder: Optional[WavRecorder] = None
        self._scratch = bytearray(AUDIO_PAYLOAD_SIZE)

        self._block_count = 0
        self._latest_block: Optional[AudioBlock] = None

    # =========================================================================
    # 상태 조회
    # =========================================================================

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def playback_sink(self) -> PlaybackSink:
        return self._sink

    @property
    def release_count(self) -> int:
        return self._release_count

    @property
    def local_address(self) -> Optional[tuple]:
        if self._socket is None:
            return None
        return self._socket.getsockname()

    @property
    def is_recording(self) -> bool:
        with self._recording_lock:
            return self._recorder is not None

    @property
    def recording_path(self) -> Optional[Path]:
        with self._recording_lock:
            return self._recorder.path if self._recorder is not None else None

    def latest_block(self) -> Optional[AudioBlock]:
        """가장 최근에 수신한 오디오 블록을 반환합니다."""
        return self._latest_block

    # =========================================================================
    # 수명 주기
    # =========================================================================

    def open(self) -> None:
        """
        UDP 소켓을 바인드하고 재생 싱크를 엽니다.

        재생 장치 열기에 실패하면 NullSink로 대체하여 수신은 계속합니다.

        에러:
            RuntimeError: 이미 열렸거나 해제된 경우
            OSError: 소켓 바인드 실패 시
        """
        if self._opened or self._released:
            raise RuntimeError("AudioReassembler는 한 번만 열 수 있습니다")

        if self._socket is None:
            self._socket = open_udp_socket(
                self._bind_host, self._port, self._receive_buffer_bytes
            )

        try:
            self._sink.open()
        except PlaybackError as exc:
            logger.error(f"재생 장치 사용 불가, 오디오 출력 없이 수신합니다: {exc}")
            self._sink = NullSink()

        self._opened = True
        logger.info(f"오디오 수신 대기: {self.local_address}, sink={self._sink.name}")

    def run(self) -> None:
        """
        블로킹 수신 루프를 실행합니다. stop() 호출 시 종료되며,
        종료 시 재생 싱크와 녹음 파일을 해제합니다.
        """
        if self._released:
            return
        if not self._opened:
            self.open()

        self._active = True
        logger.info("오디오 수신 루프 시작")
        try:
            while not self._stop_event.is_set():
                try:
                    data, _addr = self._socket.recvfrom(MAX_DATAGRAM_SIZE)
                except OSError as exc:
                    if not self._stop_event.is_set():
                        logger.error(f"오디오 소켓 수신 오류, 루프 종료: {exc}")
                    break

                if not data:
                    continue
                self.process_datagram(data)
        finally:
            self._release()
            logger.info("오디오 수신 루프 종료")

    def stop(self) -> None:
        """수신 루프 정지를 요청하고 소켓을 닫습니다. 여러 번 호출해도 안전합니다."""
        self._stop_event.set()
        sock = self._socket
        if sock is not None:
            close_socket(sock)
        if not self._active:
            self._release()

    # =========================================================================
    # 데이터그램 처리
    # =========================================================================

    def process_datagram(self, data: bytes) -> Optional[AudioBlock]:
        """
        오디오 데이터그램 하나를 처리합니다.

        반환값:
            AudioBlock: 유효한 패킷이 재생 싱크로 전달된 경우
            None: 크기가 맞지 않아 폐기된 경우 (카운터 변화 없음)
        """
        try:
            packet = decode_audio_packet(data)
        except InvalidPacketSizeError as exc:
            logger.debug(f"오디오 패킷 폐기: {exc}")
            return None

        samples = packet.samples
        self._play(samples)
        self._record(samples)

        rms, peak = calculate_levels(samples)
        self._counters.add_audio_packet(AUDIO_PACKET_SIZE, SAMPLE_FRAMES_PER_PACKET)
        self._counters.update_audio_level(rms, peak)

        block = AudioBlock(
            block_id=self._block_count,
            timestamp_ns=time.time_ns(),
            data=bytes(samples),
            rms=rms,
            peak=peak,
        )
        self._block_count += 1
        self._latest_block = block
        return block

    def _play(self, samples: memoryview) -> None:
        try:
            self._sink.play(samples)
        except PlaybackError as exc:
            logger.error(f"재생 실패, 오디오 출력을 중단합니다: {exc}")
            failed_sink, self._sink = self._sink, NullSink()
            failed_sink.close()

    def _record(self, samples: memoryview) -> None:
        with self._recording_lock:
            recorder = self._recorder
            if recorder is None:
                return
            self._scratch[:] = samples
            try:
                recorder.write(self._scratch)
            except RecordingError as exc:
                logger.error(f"녹음 쓰기 실패, 녹음을 중단합니다: {exc}")
                self._recorder = None
                recorder.close()

    # =========================================================================
    # 녹음 제어
    # =========================================================================

    def start_recording(self, path: Union[str, Path, None] = None) -> Path:
        """
        녹음을 시작합니다. 이미 녹음 중이면 기존 파일을 닫고 새 파일로 전환합니다.

        파라미터:
            path: 출력 WAV 경로 (None이면 기본 타임스탬프 파일명)

        반환값:
            Path: 녹음 파일 경로

        에러:
            RuntimeError: 수신이 종료된 이후 호출 시
            RecordingError: 파일 생성 실패 시
        """
        if self._released:
            raise RuntimeError("종료된 오디오 스트림에서는 녹음할 수 없습니다")

        target = Path(path) if path is not None else default_recording_path(self._recording_dir)
        recorder = WavRecorder(target, self._sample_rate)
        with self._recording_lock:
            previous, self._recorder = self._recorder, recorder
        if previous is not None:
            previous.close()
        return recorder.path

    def stop_recording(self) -> Optional[Path]:
        """
        녹음을 중지합니다.

        반환값:
            Optional[Path]: 닫은 녹음 파일 경로 (녹음 중이 아니면 None)
        """
        with self._recording_lock:
            recorder, self._recorder = self._recorder, None
        if recorder is None:
            return None
        recorder.close()
        return recorder.path

    def _release(self) -> None:
        """소켓, 재생 싱크, 녹음 파일을 해제합니다. 한 번만 수행됩니다."""
        with self._release_lock:
            if self._released:
                return
            self._released = True

            if self._socket is not None:
                close_socket(self._socket)
            self.stop_recording()
            self._sink.close()
            self._active = False
            self._release_count += 1
