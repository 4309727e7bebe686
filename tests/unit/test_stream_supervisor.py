"""
StreamSupervisor 단위 테스트

도달성 확인/명령 클라이언트는 가짜 구현을 주입하고,
비디오/오디오 재조립기는 루프백 임시 포트에 바인드한 실제 객체를 사용합니다.

검증 조건:
- 시작 순서: 도달성 확인 → 스트림 시작 명령 → 수신 루프 실행
- 장치에 도달할 수 없으면 재조립기를 생성하지 않음
- remote_start=False: 장치 명령 없이 수신, 파일 실행 거부
- PAL 세션에서 end_line=240 프레임 → 비디오 경로만 1회 재시작 (높이 240)
- stop(): 두 루프 종료, 버퍼 1회 해제, 중지 명령 전송, 최종 카운터 게시
"""

from __future__ import annotations

import asyncio
import socket

import pytest

from u64stream.audio.audio_reassembler import AudioReassembler
from u64stream.audio.playback_sinks import NullSink
from u64stream.config.schema import AppConfig
from u64stream.control.command_client import (
    RemoteControlDisabledError,
    TransportError,
    UnreachableDeviceError,
)
from u64stream.protocol import VideoPacketHeader
from u64stream.protocol.udp_socket import open_udp_socket
from u64stream.protocol.wire_codec import encode_video_header
from u64stream.supervisor import StreamSupervisor
from u64stream.video import VideoMode
from u64stream.video.video_reassembler import VideoReassembler


# =============================================================================
# 헬퍼
# =============================================================================

def _make_config(tmp_path, remote_start: bool = True, recording: bool = False) -> AppConfig:
    return AppConfig(**{
        "device": {
            "address": "127.0.0.1",
            "control_port": 6464,
            "ping_timeout_ms": 250,
            "remote_start": remote_start,
        },
        "stream": {
            "bind_host": "127.0.0.1",
            "frame_buffer_count": 3,
            "receive_buffer_bytes": 0,
        },
        "audio": {"output_device": "none"},
        "recording": {"enabled": recording, "output_dir": str(tmp_path / "capture")},
    })


class _FakeClient:
    def __init__(self, host: str, port: int, log: list, fail_stop: bool = False) -> None:
        self.host = host
        self.port = port
        self._log = log
        self._fail_stop = fail_stop

    def start_streams(self) -> None:
        self._log.append(("start_streams", self.host, self.port))

    def stop_streams(self) -> None:
        self._log.append(("stop_streams", self.host, self.port))
        if self._fail_stop:
            raise TransportError("connection refused")

    def run_file(self, path, mount_run=True) -> None:
        self._log.append(("run_file", str(path), mount_run))

    def send_keystroke(self, key_code: int, shift: bool = False) -> bool:
        self._log.append(("keystroke", key_code, shift))
        return True

    def reset(self) -> None:
        self._log.append(("reset",))


class _Harness:
    """가짜 장치 + 루프백 재조립기 팩토리 묶음"""

    def __init__(self, config: AppConfig, reachable: bool = True, fail_stop: bool = False) -> None:
        self.log: list = []
        self.videos: list[VideoReassembler] = []
        self.audios: list[AudioReassembler] = []
        self._reachable = reachable
        self._fail_stop = fail_stop
        self.supervisor = StreamSupervisor(
            config,
            video_factory=self._video_factory,
            audio_factory=self._audio_factory,
            client_factory=lambda host, port: _FakeClient(host, port, self.log, self._fail_stop),
            sink_factory=lambda cfg: NullSink(),
            probe=self._probe,
        )

    def _probe(self, host: str, port: int, timeout_ms: int) -> None:
        self.log.append(("probe", host, port, timeout_ms))
        if not self._reachable:
            raise UnreachableDeviceError(f"{host}:{port} unreachable")

    def _video_factory(self, config, counters, mode) -> VideoReassembler:
        video = VideoReassembler(config, counters, mode, sock=open_udp_socket("127.0.0.1", 0))
        self.videos.append(video)
        return video

    def _audio_factory(self, config, counters, sink) -> AudioReassembler:
        audio = AudioReassembler(config, counters, sink, sock=open_udp_socket("127.0.0.1", 0))
        self.audios.append(audio)
        return audio


async def _wait_until(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


def _ntsc_end_packet() -> bytes:
    """end_line = 236 + 4 = 240 인 프레임 끝 패킷"""
    header = VideoPacketHeader(
        sequence_number=1,
        frame_number=1,
        line_number=0x8000 | 236,
        pixels_per_line=384,
        bits_per_pixel=4,
        lines_per_packet=4,
    )
    return encode_video_header(header) + bytes(768)


def _audio_packet() -> bytes:
    return b"\x00\x00" + bytes(range(256)) * 3


# =============================================================================
# 시작
# =============================================================================

class TestStart:
    @pytest.mark.asyncio
    async def test_probe_then_start_streams(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        session = await harness.supervisor.start()
        try:
            assert harness.log == [
                ("probe", "127.0.0.1", 6464, 250),
                ("start_streams", "127.0.0.1", 6464),
            ]
            assert harness.supervisor.is_running
            assert session.mode is VideoMode.PAL
            assert len(harness.videos) == 1
            assert len(harness.audios) == 1
        finally:
            await harness.supervisor.stop()

    @pytest.mark.asyncio
    async def test_unreachable_device_launches_nothing(self, tmp_path):
        harness = _Harness(_make_config(tmp_path), reachable=False)
        with pytest.raises(UnreachableDeviceError):
            await harness.supervisor.start()
        assert harness.videos == []
        assert harness.audios == []
        assert [entry[0] for entry in harness.log] == ["probe"]
        assert harness.supervisor.status == "idle"
        assert harness.supervisor.session is None

    @pytest.mark.asyncio
    async def test_remote_start_disabled(self, tmp_path):
        harness = _Harness(_make_config(tmp_path, remote_start=False))
        await harness.supervisor.start()
        try:
            assert harness.log == []
            prg = tmp_path / "game.prg"
            prg.write_bytes(b"\x01\x08")
            with pytest.raises(RemoteControlDisabledError):
                await harness.supervisor.run_file(prg)
        finally:
            await harness.supervisor.stop()
        assert harness.log == []

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        await harness.supervisor.start()
        try:
            with pytest.raises(RuntimeError):
                await harness.supervisor.start()
        finally:
            await harness.supervisor.stop()

    @pytest.mark.asyncio
    async def test_recording_enabled_at_start(self, tmp_path):
        harness = _Harness(_make_config(tmp_path, recording=True))
        await harness.supervisor.start()
        try:
            assert harness.audios[0].is_recording
        finally:
            await harness.supervisor.stop()
        assert not harness.audios[0].is_recording


# =============================================================================
# 모드 변경
# =============================================================================

class TestModeChange:
    @pytest.mark.asyncio
    async def test_ntsc_frame_restarts_video_only(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        supervisor = harness.supervisor
        session = await supervisor.start()
        first_video = harness.videos[0]
        audio = harness.audios[0]
        sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            assert await _wait_until(lambda: first_video.is_active and audio.is_active)
            sender.sendto(_ntsc_end_packet(), first_video.local_address)

            assert await _wait_until(
                lambda: len(harness.videos) == 2 and harness.videos[1].is_active
            )
            new_video = harness.videos[1]
            assert session.video is new_video
            assert session.mode is VideoMode.NTSC
            assert new_video.frame_ring.height == 240
            assert first_video.release_count == 1

            event = supervisor.get_mode_change_queue().get_nowait()
            assert event.previous_mode is VideoMode.PAL
            assert event.detected_mode is VideoMode.NTSC
            assert event.end_line == 240
            assert supervisor.get_mode_change_queue().empty()

            snapshot = supervisor.snapshot()
            assert snapshot.mode_changes == 1
            assert snapshot.video_mode == "NTSC"

            # 오디오 경로는 재시작되지 않음
            assert len(harness.audios) == 1
            assert audio.is_active
            sender.sendto(_audio_packet(), audio.local_address)
            assert await _wait_until(lambda: supervisor.snapshot().audio_samples > 0)

            # 재시작 시 장치 명령은 다시 보내지 않음
            assert [entry[0] for entry in harness.log] == ["probe", "start_streams"]
        finally:
            sender.close()
            await supervisor.stop()

        assert len(harness.videos) == 2
        assert harness.videos[1].release_count == 1


# =============================================================================
# 종료
# =============================================================================

class TestStop:
    @pytest.mark.asyncio
    async def test_stop_releases_and_publishes(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        supervisor = harness.supervisor
        await supervisor.start()
        video, audio = harness.videos[0], harness.audios[0]
        assert await _wait_until(lambda: video.is_active and audio.is_active)

        final = await supervisor.stop()

        assert final is not None
        assert supervisor.final_snapshot is final
        assert supervisor.status == "idle"
        assert supervisor.session is None
        assert video.release_count == 1
        assert audio.release_count == 1
        assert not video.is_active
        assert not audio.is_active
        assert harness.log[-1] == ("stop_streams", "127.0.0.1", 6464)

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        await harness.supervisor.start()
        first = await harness.supervisor.stop()
        second = await harness.supervisor.stop()
        assert second is first
        assert [entry[0] for entry in harness.log].count("stop_streams") == 1
        assert harness.videos[0].release_count == 1

    @pytest.mark.asyncio
    async def test_stop_command_failure_is_not_fatal(self, tmp_path):
        harness = _Harness(_make_config(tmp_path), fail_stop=True)
        await harness.supervisor.start()
        final = await harness.supervisor.stop()
        assert final is not None
        assert harness.supervisor.status == "idle"

    @pytest.mark.asyncio
    async def test_stop_without_session(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        assert await harness.supervisor.stop() is None

    @pytest.mark.asyncio
    async def test_run_until_shutdown_requested(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        supervisor = harness.supervisor
        runner = asyncio.create_task(supervisor.run())
        assert await _wait_until(lambda: supervisor.is_running)

        supervisor.request_shutdown()
        await asyncio.wait_for(runner, timeout=3.0)

        assert supervisor.status == "idle"
        assert supervisor.final_snapshot is not None
        assert harness.videos[0].release_count == 1
        assert harness.audios[0].release_count == 1

    @pytest.mark.asyncio
    async def test_session_can_restart_after_stop(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        await harness.supervisor.start()
        await harness.supervisor.stop()
        await harness.supervisor.start()
        try:
            assert len(harness.videos) == 2
        finally:
            await harness.supervisor.stop()


# =============================================================================
# 세션 중 제어
# =============================================================================

class TestControls:
    def test_recording_without_session_raises(self, tmp_path):
        supervisor = StreamSupervisor(_make_config(tmp_path))
        with pytest.raises(RuntimeError):
            supervisor.start_recording()
        with pytest.raises(RuntimeError):
            supervisor.stop_recording()

    @pytest.mark.asyncio
    async def test_recording_toggle_during_session(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        await harness.supervisor.start()
        try:
            path = harness.supervisor.start_recording(tmp_path / "take.wav")
            assert path == tmp_path / "take.wav"
            assert harness.supervisor.stop_recording() == path
            assert path.exists()
        finally:
            await harness.supervisor.stop()

    @pytest.mark.asyncio
    async def test_commands_forwarded(self, tmp_path):
        harness = _Harness(_make_config(tmp_path))
        prg = tmp_path / "game.prg"
        prg.write_bytes(b"\x01\x08")
        await harness.supervisor.run_file(prg, mount_run=False)
        assert await harness.supervisor.send_keystroke(65) is True
        await harness.supervisor.reset()
        assert harness.log == [
            ("run_file", str(prg), False),
            ("keystroke", 65, False),
            ("reset",),
        ]

    def test_config_change_applies_to_next_session(self, tmp_path):
        old = _make_config(tmp_path)
        new = _make_config(tmp_path, remote_start=False)
        supervisor = StreamSupervisor(old)
        supervisor.apply_config(old, new)
        assert supervisor.config is new

    def test_no_frame_without_session(self, tmp_path):
        supervisor = StreamSupervisor(_make_config(tmp_path))
        assert supervisor.latest_frame() is None
        assert supervisor.latest_rgb_frame() is None
        assert supervisor.latest_audio_block() is None
        assert supervisor.snapshot().video_frames == 0
