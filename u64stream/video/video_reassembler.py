"""
UDP 비디오 스트림 재조립 모듈입니다.

역할:
- 순서 보장이 없는 UDP 비디오 데이터그램을 스캔 버퍼에 라인 단위로 배치
- line_number bit 15(프레임 끝)에서 프레임 완성, 종료 라인으로 PAL/NTSC 판정
- 모드가 일치하면 4bit 색상 인덱스 프레임으로 디코딩하여 FrameRing에 게시
- 모드가 다르면 ModeMismatch 신호를 반환하고 수신 루프 종료 (Supervisor가 재시작)
- 패킷 손실/수신 바이트/프레임 수/FPS 카운터 갱신

상태 전이:
    IDLE → LISTENING → ACCUMULATING → FRAME_READY
        → (모드 일치: ACCUMULATING | 모드 불일치: RESTARTING) → STOPPED

사용 예시:
    >>> reassembler = VideoReassembler(config, counters, VideoMode.PAL)
    >>> reassembler.open()
    >>> mismatch = reassembler.run()     # 블로킹 (워커 스레드에서 실행)
    >>> reassembler.stop()               # 다른 스레드에서 호출
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Optional, Union

import numpy as np

from u64stream.config.schema import AppConfig
from u64stream.metrics.session_counters import SessionCounters
from u64stream.protocol import VideoPacketHeader
from u64stream.protocol.udp_socket import MAX_DATAGRAM_SIZE, close_socket, open_udp_socket
from u64stream.protocol.wire_codec import (
    CopyOverflowError,
    MalformedHeaderError,
    split_video_datagram,
)
from u64stream.video import RASTER_WIDTH, ModeMismatch, RasterFrame, StreamState, VideoMode
from u64stream.video.frame_ring import FrameRing

logger = logging.getLogger(__name__)

# 장치는 패킷당 4 라인을 전송합니다.
LINES_PER_PACKET = 4
# 1 byte에 2 픽셀 (4bit 인덱스)
_BYTES_PER_RASTER_LINE = RASTER_WIDTH // 2

# process_datagram() 결과 타입
DatagramResult = Optional[Union[RasterFrame, ModeMismatch]]


class VideoReassembler:
    """
    UDP 비디오 데이터그램을 RasterFrame으로 재조립하는 클래스입니다.

    스레딩:
        - run()은 워커 스레드에서 블로킹 수신 루프를 실행합니다.
        - stop()은 다른 스레드에서 소켓을 닫아 recvfrom()을 해제합니다.
        - 스캔 버퍼와 FrameRing 쓰기는 수신 스레드만 수행합니다.
    """

    def __init__(
        self,
        config: AppConfig,
        counters: SessionCounters,
        mode: VideoMode = VideoMode.PAL,
        sock: Optional[socket.socket] = None,
    ) -> None:
        """
        VideoReassembler를 초기화합니다.

        파라미터:
            config: 전체 애플리케이션 설정 객체
            counters: 세션 진단 카운터 (비디오 카운터만 갱신)
            mode: 세션이 가정하는 비디오 모드
            sock: 이미 바인드된 UDP 소켓 (None이면 open()에서 생성)
        """
        self._bind_host = config.stream.bind_host
        self._port = config.stream.video_port
        self._receive_buffer_bytes = config.stream.receive_buffer_bytes
        self._frame_buffer_count = config.stream.frame_buffer_count
        self._counters = counters
        self._mode = mode

        self._socket: Optional[socket.socket] = sock
        self._stop_event = threading.Event()
        self._release_lock = threading.Lock()
        self._state = StreamState.IDLE
        self._active = False
        self._release_count = 0

        # 스캔 버퍼 / 프레임 링 (open() 시 현재 모드 높이로 할당)
        self._scan_buffer: Optional[np.ndarray] = None
        self._frame_ring: Optional[FrameRing] = None

        # 패킷 손실 추정용 직전 line_number
        self._prev_line = 0
        # FPS 계산 기준 시각 (monotonic ns)
        self._timer_start_ns = 0

    # =========================================================================
    # 상태 조회
    # =========================================================================

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def mode(self) -> VideoMode:
        return self._mode

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def frame_ring(self) -> Optional[FrameRing]:
        return self._frame_ring

    @property
    def scan_buffer(self) -> Optional[np.ndarray]:
        return self._scan_buffer

    @property
    def release_count(self) -> int:
        """버퍼 해제가 실제로 수행된 횟수 (정상 동작 시 최대 1)"""
        return self._release_count

    @property
    def local_address(self) -> Optional[tuple]:
        """바인드된 소켓 주소. 소켓이 없으면 None"""
        if self._socket is None:
            return None
        return self._socket.getsockname()

    def latest_frame(self) -> Optional[RasterFrame]:
        """가장 최근에 게시된 프레임을 반환합니다."""
        ring = self._frame_ring
        return ring.latest() if ring is not None else None

    # =========================================================================
    # 수명 주기
    # =========================================================================

    def open(self) -> None:
        """
        UDP 소켓을 바인드하고 현재 모드 높이로 버퍼를 할당합니다.

        에러:
            RuntimeError: 이미 열려 있거나 종료된 경우
            OSError: 소켓 바인드 실패 시
        """
        if self._state is not StreamState.IDLE:
            raise RuntimeError(f"VideoReassembler를 열 수 없는 상태입니다: {self._state.value}")

        if self._socket is None:
            self._socket = open_udp_socket(
                self._bind_host, self._port, self._receive_buffer_bytes
            )

        self._scan_buffer = np.zeros(self._mode.height * _BYTES_PER_RASTER_LINE, dtype=np.uint8)
        self._frame_ring = FrameRing(self._frame_buffer_count, self._mode)
        self._timer_start_ns = time.monotonic_ns()
        self._state = StreamState.LISTENING

        logger.info(
            f"비디오 수신 대기: {self.local_address}, mode={self._mode.name}, "
            f"frame_buffers={self._frame_buffer_count}"
        )

    def run(self) -> Optional[ModeMismatch]:
        """
        블로킹 수신 루프를 실행합니다.

        종료 조건:
            - stop() 호출 (소켓 닫힘) → None 반환
            - 모드 불일치 감지 → ModeMismatch 반환

        어느 경우든 종료 시 스캔 버퍼와 FrameRing을 해제합니다.
        """
        if self._state is StreamState.STOPPED:
            return None
        if self._state is StreamState.IDLE:
            self.open()

        self._active = True
        logger.info("비디오 수신 루프 시작")
        try:
            while not self._stop_event.is_set():
                try:
                    data, _addr = self._socket.recvfrom(MAX_DATAGRAM_SIZE)
                except OSError as exc:
                    if not self._stop_event.is_set():
                        logger.error(f"비디오 소켓 수신 오류, 루프 종료: {exc}")
                    break

                if not data:
                    continue

                result = self.process_datagram(data)
                if isinstance(result, ModeMismatch):
                    return result
            return None
        finally:
            self._release()
            logger.info("비디오 수신 루프 종료")

    def stop(self) -> None:
        """
        수신 루프 정지를 요청하고 소켓을 닫아 블로킹 수신을 해제합니다.

        run()이 실행 중이 아니면 즉시 버퍼를 해제합니다.
        여러 번 호출해도 안전합니다.
        """
        self._stop_event.set()
        sock = self._socket
        if sock is not None:
            close_socket(sock)
        if not self._active:
            self._release()

    # =========================================================================
    # 데이터그램 처리
    # =========================================================================

    def process_datagram(self, data: bytes) -> DatagramResult:
        """
        비디오 데이터그램 하나를 처리합니다.

        파라미터:
            data: 수신한 원시 데이터그램

        반환값:
            RasterFrame: 이 패킷으로 프레임이 완성되어 게시된 경우
            ModeMismatch: 프레임이 완성되었으나 모드가 다른 경우
            None: 프레임 누적 중이거나 패킷이 폐기된 경우
        """
        if self._scan_buffer is None or self._frame_ring is None:
            raise RuntimeError("open() 이전 또는 해제 이후에는 데이터그램을 처리할 수 없습니다")

        self._counters.add_video_bytes(len(data))

        if self._state in (StreamState.LISTENING, StreamState.FRAME_READY):
            self._begin_frame()

        try:
            header, payload = split_video_datagram(data)
        except MalformedHeaderError as exc:
            logger.debug(f"비디오 패킷 폐기: {exc}")
            return None

        self._track_packet_loss(header.line_number)

        offset = header.line_index * header.bytes_per_line
        try:
            self._copy_payload(offset, payload)
        except CopyOverflowError as exc:
            logger.debug(f"비디오 페이로드 폐기: {exc}")

        if not header.is_end_of_frame:
            return None

        self._state = StreamState.FRAME_READY
        return self._complete_frame(header)

    def _begin_frame(self) -> None:
        """ACCUMULATING 진입: 스캔 버퍼를 비우고 손실 추적을 초기화합니다."""
        self._scan_buffer.fill(0)
        self._prev_line = 0
        self._state = StreamState.ACCUMULATING

    def _track_packet_loss(self, line_number: int) -> None:
        """
        직전 패킷 대비 line_number가 4 이상 전진하지 않으면 손실로 집계합니다.

        중복/재정렬 패킷도 손실로 집계되는 조건을 그대로 유지합니다.
        """
        if line_number > 0 and self._prev_line + LINES_PER_PACKET > line_number:
            self._counters.add_packet_loss()
        self._prev_line = line_number

    def _copy_payload(self, offset: int, payload: memoryview) -> None:
        """
        페이로드를 스캔 버퍼의 offset 위치에 복사합니다.

        에러:
            CopyOverflowError: 복사 범위가 스캔 버퍼를 벗어날 때 (아무것도 쓰지 않음)
        """
        length = len(payload)
        end = offset + length
        if end > self._scan_buffer.size:
            raise CopyOverflowError(
                f"스캔 버퍼 범위 초과: offset={offset}, length={length}, "
                f"buffer={self._scan_buffer.size}"
            )
        if length:
            self._scan_buffer[offset:end] = np.frombuffer(payload, dtype=np.uint8)

    def _complete_frame(self, header: VideoPacketHeader) -> DatagramResult:
        """
        프레임 끝 패킷 수신 후 모드를 확인하고 프레임을 디코딩/게시합니다.
        """
        end_line = (header.line_number + LINES_PER_PACKET) & 0x0FFF

        # 가정한 높이와 다르면 판정 모드가 같더라도 전체 재시작
        if end_line != self._mode.height:
            detected_mode = VideoMode.from_end_line(end_line)
            self._state = StreamState.RESTARTING
            logger.info(
                f"비디오 모드 불일치: {self._mode.name} → {detected_mode.name} "
                f"(end_line={end_line})"
            )
            return ModeMismatch(
                previous_mode=self._mode,
                detected_mode=detected_mode,
                end_line=end_line,
            )

        slot = self._frame_ring.next_slot()
        self._decode_into(slot)
        frame = self._frame_ring.publish(time.time_ns())

        now_ns = time.monotonic_ns()
        elapsed_ms = (now_ns - self._timer_start_ns) // 1_000_000
        self._timer_start_ns = now_ns
        fps = 1000.0 / elapsed_ms if elapsed_ms > 0 else None
        self._counters.add_video_frame(fps)

        return frame

    def _decode_into(self, slot: np.ndarray) -> None:
        """
        스캔 버퍼를 색상 인덱스 그리드로 변환합니다.

        각 바이트의 하위 nibble → 짝수 x, 상위 nibble → 홀수 x (행 우선).
        """
        packed = self._scan_buffer.reshape(self._mode.height, _BYTES_PER_RASTER_LINE)
        np.bitwise_and(packed, 0x0F, out=slot[:, 0::2])
        np.right_shift(packed, 4, out=slot[:, 1::2])

    def _release(self) -> None:
        """스캔 버퍼와 FrameRing, 소켓을 해제합니다. 한 번만 수행됩니다."""
        with self._release_lock:
            if self._state is StreamState.STOPPED:
                return
            self._state = StreamState.STOPPED

            if self._frame_ring is not None:
                self._frame_ring.release()
            self._scan_buffer = None
            if self._socket is not None:
                close_socket(self._socket)
            self._active = False
            self._release_count += 1

        self._counters.clear_fps()
