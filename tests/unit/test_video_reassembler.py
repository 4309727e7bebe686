"""
VideoReassembler 단위 테스트

검증 조건:
- 4 라인씩 전진하고 마지막 패킷에 bit 15가 설정된 시퀀스 → 모드 높이의 RasterFrame 1개
- 하위 nibble → 짝수 x, 상위 nibble → 홀수 x
- end_line이 현재 모드와 다르면 ModeMismatch 반환, 픽셀은 디코딩하지 않음
- 패킷 손실 카운터는 line_number > 0 && prev_line + 4 > line_number 마다 정확히 1 증가
- 스캔 버퍼 범위 초과 페이로드는 폐기되고 프레임은 계속 누적
- stop()은 블로킹 수신을 해제하고 버퍼를 정확히 한 번 해제
"""

from __future__ import annotations

import socket
import threading
import time

import numpy as np
import pytest

from u64stream.config.schema import AppConfig
from u64stream.metrics.session_counters import SessionCounters
from u64stream.protocol import VideoPacketHeader
from u64stream.protocol.udp_socket import open_udp_socket
from u64stream.protocol.wire_codec import encode_video_header
from u64stream.video import ModeMismatch, RasterFrame, StreamState, VideoMode
from u64stream.video import video_reassembler as video_module
from u64stream.video.video_reassembler import VideoReassembler

BYTES_PER_LINE = 192


# =============================================================================
# 헬퍼
# =============================================================================

def _make_config(frame_buffer_count: int = 3) -> AppConfig:
    return AppConfig(**{
        "stream": {
            "bind_host": "127.0.0.1",
            "frame_buffer_count": frame_buffer_count,
            "receive_buffer_bytes": 0,
        },
    })


def _line_byte(line: int) -> int:
    """라인마다 다른 nibble 쌍: 하위 = line % 16, 상위 = (line + 1) % 16"""
    return (line % 16) | (((line + 1) % 16) << 4)


def _datagram(line_number: int, payload: bytes, sequence: int = 0, frame: int = 0) -> bytes:
    header = VideoPacketHeader(
        sequence_number=sequence,
        frame_number=frame,
        line_number=line_number,
        pixels_per_line=384,
        bits_per_pixel=4,
        lines_per_packet=4,
    )
    return encode_video_header(header) + payload


def _frame_datagrams(height: int, frame: int = 0) -> list[bytes]:
    packets = []
    for sequence, line in enumerate(range(0, height, 4)):
        payload = b"".join(bytes([_line_byte(line + i)]) * BYTES_PER_LINE for i in range(4))
        line_number = line | (0x8000 if line + 4 == height else 0)
        packets.append(_datagram(line_number, payload, sequence, frame))
    return packets


def _feed(reassembler: VideoReassembler, datagrams) -> list:
    return [reassembler.process_datagram(d) for d in datagrams]


def _make_reassembler(mode: VideoMode = VideoMode.PAL, counters=None) -> VideoReassembler:
    sock = open_udp_socket("127.0.0.1", 0)
    reassembler = VideoReassembler(_make_config(), counters or SessionCounters(), mode, sock=sock)
    reassembler.open()
    return reassembler


@pytest.fixture
def reassembler():
    instance = _make_reassembler()
    yield instance
    instance.stop()


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


# =============================================================================
# 프레임 재조립
# =============================================================================

class TestFrameAssembly:
    def test_open_allocates_mode_sized_buffers(self, reassembler):
        assert reassembler.state is StreamState.LISTENING
        assert reassembler.scan_buffer.size == 272 * BYTES_PER_LINE
        assert reassembler.frame_ring.height == 272
        assert reassembler.frame_ring.capacity == 3

    def test_pal_frame_published(self, reassembler):
        results = _feed(reassembler, _frame_datagrams(272))
        assert all(r is None for r in results[:-1])
        frame = results[-1]
        assert isinstance(frame, RasterFrame)
        assert (frame.height, frame.width) == (272, 384)
        assert reassembler.latest_frame() is frame
        assert reassembler.state is StreamState.FRAME_READY

    def test_ntsc_frame_published_in_ntsc_mode(self):
        reassembler = _make_reassembler(VideoMode.NTSC)
        try:
            frame = _feed(reassembler, _frame_datagrams(240))[-1]
            assert isinstance(frame, RasterFrame)
            assert frame.height == 240
            assert frame.mode is VideoMode.NTSC
        finally:
            reassembler.stop()

    def test_nibble_order(self, reassembler):
        frame = _feed(reassembler, _frame_datagrams(272))[-1]
        for y in (0, 1, 5, 100, 271):
            assert int(frame.pixels[y, 0]) == y % 16
            assert int(frame.pixels[y, 1]) == (y + 1) % 16
            assert int(frame.pixels[y, 382]) == y % 16
            assert int(frame.pixels[y, 383]) == (y + 1) % 16

    def test_out_of_order_packets_reassemble(self, reassembler):
        packets = _frame_datagrams(272)
        body, last = packets[:-1], packets[-1]
        frame = _feed(reassembler, list(reversed(body)) + [last])[-1]
        assert isinstance(frame, RasterFrame)
        assert int(frame.pixels[8, 0]) == 8

    def test_scan_buffer_cleared_between_frames(self, reassembler):
        _feed(reassembler, _frame_datagrams(272))
        # 두 번째 프레임은 마지막 패킷만 도착
        frame = reassembler.process_datagram(_frame_datagrams(272)[-1])
        assert isinstance(frame, RasterFrame)
        assert int(frame.pixels[0, 0]) == 0
        assert int(frame.pixels[270, 0]) == 270 % 16

    def test_frame_counter_and_bytes(self):
        counters = SessionCounters()
        reassembler = _make_reassembler(counters=counters)
        try:
            packets = _frame_datagrams(272) * 2
            _feed(reassembler, packets)
            snapshot = counters.snapshot()
            assert snapshot.video_frames == 2
            assert snapshot.video_received_bytes == sum(len(p) for p in packets)
            assert reassembler.frame_ring.published_count == 2
        finally:
            reassembler.stop()

    def test_fps_from_elapsed_time(self, monkeypatch):
        clock = {"ns": 0}
        monkeypatch.setattr(video_module.time, "monotonic_ns", lambda: clock["ns"])
        counters = SessionCounters()
        reassembler = _make_reassembler(counters=counters)
        try:
            clock["ns"] = 20_000_000
            _feed(reassembler, _frame_datagrams(272))
            assert counters.snapshot().fps == pytest.approx(50.0)

            # 경과 시간이 0ms이면 FPS를 갱신하지 않음
            _feed(reassembler, _frame_datagrams(272))
            assert counters.snapshot().fps == pytest.approx(50.0)
            assert counters.snapshot().video_frames == 2
        finally:
            reassembler.stop()


# =============================================================================
# 모드 불일치
# =============================================================================

class TestModeMismatch:
    def test_ntsc_stream_under_pal(self):
        counters = SessionCounters()
        reassembler = _make_reassembler(VideoMode.PAL, counters)
        try:
            result = _feed(reassembler, _frame_datagrams(240))[-1]
            assert result == ModeMismatch(
                previous_mode=VideoMode.PAL, detected_mode=VideoMode.NTSC, end_line=240
            )
            assert reassembler.state is StreamState.RESTARTING
            assert reassembler.latest_frame() is None
            assert counters.snapshot().video_frames == 0
        finally:
            reassembler.stop()

    def test_pal_stream_under_ntsc(self):
        reassembler = _make_reassembler(VideoMode.NTSC)
        try:
            # NTSC 스캔 버퍼보다 아래 라인은 범위 초과로 폐기되지만 종료 라인은 판정됨
            result = _feed(reassembler, _frame_datagrams(272))[-1]
            assert isinstance(result, ModeMismatch)
            assert result.detected_mode is VideoMode.PAL
            assert result.end_line == 272
        finally:
            reassembler.stop()

    def test_unexpected_end_line_maps_to_ntsc(self, reassembler):
        result = reassembler.process_datagram(_datagram(0x8000 | 196, bytes(768)))
        assert isinstance(result, ModeMismatch)
        assert result.detected_mode is VideoMode.NTSC
        assert result.end_line == 200

    def test_odd_end_line_in_ntsc_still_restarts(self):
        counters = SessionCounters()
        reassembler = _make_reassembler(VideoMode.NTSC, counters)
        try:
            result = reassembler.process_datagram(_datagram(0x8000 | 196, bytes(768)))
            assert isinstance(result, ModeMismatch)
            assert result.previous_mode is VideoMode.NTSC
            assert result.detected_mode is VideoMode.NTSC
            assert result.end_line == 200
            assert reassembler.state is StreamState.RESTARTING
            assert counters.snapshot().video_frames == 0
        finally:
            reassembler.stop()

    def test_run_returns_mismatch_and_releases(self):
        reassembler = _make_reassembler(VideoMode.PAL)
        address = reassembler.local_address
        sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            for packet in _frame_datagrams(240):
                sender.sendto(packet, address)
            result = reassembler.run()
        finally:
            sender.close()
        assert isinstance(result, ModeMismatch)
        assert reassembler.state is StreamState.STOPPED
        assert reassembler.release_count == 1
        assert reassembler.scan_buffer is None


# =============================================================================
# 패킷 손실 / 범위 초과 / 잘못된 헤더
# =============================================================================

class TestPacketLoss:
    def test_clean_frame_has_no_loss(self):
        counters = SessionCounters()
        reassembler = _make_reassembler(counters=counters)
        try:
            _feed(reassembler, _frame_datagrams(272) * 3)
            assert counters.snapshot().video_packet_loss == 0
        finally:
            reassembler.stop()

    def test_loss_counted_per_matching_datagram(self):
        line_numbers = [0, 4, 4, 12, 8, 16, 16, 15, 40, 0, 44, 60, 52]
        expected = 0
        prev = 0
        for line in line_numbers:
            if line > 0 and prev + 4 > line:
                expected += 1
            prev = line

        counters = SessionCounters()
        reassembler = _make_reassembler(counters=counters)
        try:
            _feed(reassembler, [_datagram(line, bytes(768)) for line in line_numbers])
            assert counters.snapshot().video_packet_loss == expected == 5
        finally:
            reassembler.stop()

    def test_prev_line_resets_at_frame_start(self):
        counters = SessionCounters()
        reassembler = _make_reassembler(counters=counters)
        try:
            _feed(reassembler, _frame_datagrams(272))
            # 새 프레임의 첫 패킷 (line 4): 직전 값이 0으로 초기화되어 손실 아님
            reassembler.process_datagram(_datagram(4, bytes(768)))
            assert counters.snapshot().video_packet_loss == 0
        finally:
            reassembler.stop()


class TestDroppedPayloads:
    def test_overflowing_payload_dropped_frame_continues(self, reassembler):
        packets = _frame_datagrams(272)
        overflow = _datagram(270, b"\xFF" * 768)
        frame = _feed(reassembler, packets[:-1] + [overflow, packets[-1]])[-1]
        assert isinstance(frame, RasterFrame)
        assert int(frame.pixels[270, 0]) == 270 % 16

    def test_short_datagram_ignored(self):
        counters = SessionCounters()
        reassembler = _make_reassembler(counters=counters)
        try:
            assert reassembler.process_datagram(b"\x00" * 9) is None
            frame = _feed(reassembler, _frame_datagrams(272))[-1]
            assert isinstance(frame, RasterFrame)
            assert counters.snapshot().video_received_bytes >= 9
        finally:
            reassembler.stop()


# =============================================================================
# 수신 루프 / 종료
# =============================================================================

class TestReceiveLoop:
    def test_loopback_frame_then_stop(self):
        counters = SessionCounters()
        reassembler = _make_reassembler(counters=counters)
        result = {}
        worker = threading.Thread(target=lambda: result.setdefault("value", reassembler.run()))
        worker.start()

        sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            for packet in _frame_datagrams(272):
                sender.sendto(packet, reassembler.local_address)
            assert _wait_for(lambda: counters.snapshot().video_frames == 1)
        finally:
            sender.close()

        reassembler.stop()
        worker.join(timeout=2.0)
        assert not worker.is_alive()
        assert result["value"] is None
        assert reassembler.release_count == 1
        assert reassembler.frame_ring.released

    def test_stop_unblocks_idle_receive(self):
        reassembler = _make_reassembler()
        worker = threading.Thread(target=reassembler.run)
        worker.start()
        assert _wait_for(lambda: reassembler.is_active)

        reassembler.stop()
        worker.join(timeout=2.0)
        assert not worker.is_alive()
        assert not reassembler.is_active
        assert reassembler.state is StreamState.STOPPED

    def test_release_happens_exactly_once(self):
        reassembler = _make_reassembler()
        worker = threading.Thread(target=reassembler.run)
        worker.start()
        assert _wait_for(lambda: reassembler.is_active)

        reassembler.stop()
        reassembler.stop()
        worker.join(timeout=2.0)
        reassembler.stop()
        assert reassembler.release_count == 1

    def test_stop_before_run(self):
        reassembler = _make_reassembler()
        reassembler.stop()
        assert reassembler.release_count == 1
        assert reassembler.run() is None
        assert reassembler.release_count == 1

    def test_process_after_release_rejected(self):
        reassembler = _make_reassembler()
        reassembler.stop()
        with pytest.raises(RuntimeError):
            reassembler.process_datagram(_frame_datagrams(272)[0])
