"""
스트림 세션 수명 주기 관리 모듈입니다.

역할:
- 세션 시작: 장치 도달성 확인 → 스트림 시작 명령 → 비디오/오디오 수신 루프 병렬 실행
- 비디오 모드 불일치 신호 수신 시 비디오 경로만 재시작 (오디오는 계속)
- 세션 종료: 두 수신 소켓을 닫아 루프를 해제하고 종료를 기다린 뒤 최종 카운터 게시
- 파일 실행/키 입력/리셋/녹음 토글 등 세션 중 제어 동작 제공

구조:
            StreamSupervisor (asyncio)
             │ to_thread           │ to_thread
             ▼                     ▼
      VideoReassembler.run   AudioReassembler.run
             │ ModeMismatch        │
             ▼                     ▼
      비디오 경로 재시작       PlaybackSink / WavRecorder

사용 예시:
    >>> supervisor = StreamSupervisor(config)
    >>> await supervisor.start()
    >>> frame = supervisor.latest_frame()
    >>> final = await supervisor.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

import numpy as np

from u64stream.audio import AudioBlock
from u64stream.audio.audio_reassembler import AudioReassembler
from u64stream.audio.playback_sinks import PlaybackSink, create_playback_sink
from u64stream.audio.wav_recorder import RecordingError
from u64stream.config.schema import AppConfig
from u64stream.control.command_client import (
    CommandClient,
    RemoteControlDisabledError,
    TransportError,
    probe_device,
)
from u64stream.logging.structured_logger import StructuredLogger, new_session_id
from u64stream.metrics.session_counters import CounterSnapshot, SessionCounters
from u64stream.video import ModeMismatch, RasterFrame, VideoMode
from u64stream.video.color_table import ColorTable
from u64stream.video.video_reassembler import VideoReassembler

logger = logging.getLogger(__name__)

# 모드 변경 알림 큐 크기
_MODE_EVENT_QUEUE_SIZE = 16

VideoFactory = Callable[[AppConfig, SessionCounters, VideoMode], VideoReassembler]
AudioFactory = Callable[[AppConfig, SessionCounters, PlaybackSink], AudioReassembler]
ClientFactory = Callable[[str, int], CommandClient]
ProbeFunc = Callable[[str, int, int], None]


@dataclass
class StreamSession:
    """
    활성 스트림 세션 1개의 상태입니다.

    필드:
        session_id: 세션 식별자
        config: 세션 시작 시점의 설정 스냅샷 (세션 중 변경되지 않음)
        counters: 세션 진단 카운터
        color_table: 세션 컬러 테이블
        mode: 현재 가정 중인 비디오 모드
        started_at_ns: 세션 시작 시각
        video: 현재 비디오 재조립기 (모드 변경 시 교체)
        audio: 오디오 수신기
        mode_changes: 세션 중 감지된 모드 변경 이력
    """
    session_id: str
    config: AppConfig
    counters: SessionCounters
    color_table: ColorTable
    mode: VideoMode
    started_at_ns: int
    video: Optional[VideoReassembler] = None
    audio: Optional[AudioReassembler] = None
    mode_changes: list[ModeMismatch] = field(default_factory=list)


class StreamSupervisor:
    """
    비디오/오디오 수신 루프의 시작/재시작/종료를 조정하는 클래스입니다.

    상태: "idle" | "starting" | "running" | "stopping"
    """

    def __init__(
        self,
        config: AppConfig,
        video_factory: Optional[VideoFactory] = None,
        audio_factory: Optional[AudioFactory] = None,
        client_factory: Optional[ClientFactory] = None,
        sink_factory: Optional[Callable[[AppConfig], PlaybackSink]] = None,
        probe: ProbeFunc = probe_device,
        send_stop_commands: bool = True,
    ) -> None:
        """
        파라미터:
            config: 다음 세션에 사용할 설정
            video_factory: VideoReassembler 생성 함수 (테스트 주입용)
            audio_factory: AudioReassembler 생성 함수 (테스트 주입용)
            client_factory: CommandClient 생성 함수 (host, port)
            sink_factory: 재생 싱크 생성 함수 (기본: audio.output_device 설정)
            probe: 도달성 확인 함수 (host, port, timeout_ms)
            send_stop_commands: 세션 종료 시 스트림 중지 명령 전송 여부
        """
        self._config = config
        self._video_factory = video_factory or VideoReassembler
        self._audio_factory = audio_factory or AudioReassembler
        self._client_factory = client_factory or CommandClient
        self._sink_factory = sink_factory or (lambda cfg: create_playback_sink(cfg.audio))
        self._probe = probe
        self._send_stop_commands = send_stop_commands

        self._status = "idle"
        self._session: Optional[StreamSession] = None
        self._stopping = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._final_snapshot: Optional[CounterSnapshot] = None
        self._mode_queue: asyncio.Queue[ModeMismatch] = asyncio.Queue(
            maxsize=_MODE_EVENT_QUEUE_SIZE
        )

    # =========================================================================
    # 상태 조회
    # =========================================================================

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == "running"

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def final_snapshot(self) -> Optional[CounterSnapshot]:
        """마지막 세션 종료 시 게시된 카운터 (세션이 끝나지 않았으면 None)"""
        return self._final_snapshot

    def get_mode_change_queue(self) -> asyncio.Queue[ModeMismatch]:
        """모드 변경 알림 큐를 반환합니다."""
        return self._mode_queue

    def snapshot(self) -> CounterSnapshot:
        """현재 세션 카운터 스냅샷. 세션이 없으면 마지막 최종 카운터를 반환합니다."""
        if self._session is not None:
            return self._session.counters.snapshot()
        return self._final_snapshot or CounterSnapshot()

    def latest_frame(self) -> Optional[RasterFrame]:
        """가장 최근에 완성된 RasterFrame. 세션이 없으면 None."""
        session = self._session
        if session is None or session.video is None:
            return None
        return session.video.latest_frame()

    def latest_rgb_frame(self) -> Optional[np.ndarray]:
        """가장 최근 프레임을 세션 컬러 테이블로 변환한 (H, W, 3) RGB 배열"""
        frame = self.latest_frame()
        if frame is None:
            return None
        return self._session.color_table.to_rgb(frame)

    def latest_audio_block(self) -> Optional[AudioBlock]:
        session = self._session
        if session is None or session.audio is None:
            return None
        return session.audio.latest_block()

    # =========================================================================
    # 수명 주기
    # =========================================================================

    async def start(self) -> StreamSession:
        """
        스트림 세션을 시작합니다.

        remote_start가 켜져 있으면 도달성 확인 후 스트림 시작 명령을 보냅니다.
        도달성 확인이나 명령 전송이 실패하면 수신 루프를 실행하지 않습니다.

        반환값:
            StreamSession: 시작된 세션

        에러:
            RuntimeError: 이미 세션이 실행 중일 때
            UnreachableDeviceError: 도달성 확인 실패 시
            TransportError: 스트림 시작 명령 전송 실패 시
            OSError: UDP 포트 바인드 실패 시
        """
        if self._status != "idle":
            raise RuntimeError(f"세션을 시작할 수 없는 상태입니다: {self._status}")

        self._status = "starting"
        self._stopping = False
        config = self._config
        mode = VideoMode.from_name(config.stream.initial_video_mode)

        try:
            if config.device.remote_start:
                await asyncio.to_thread(
                    self._probe,
                    config.device.address,
                    config.device.control_port,
                    config.device.ping_timeout_ms,
                )
                client = self._client_factory(config.device.address, config.device.control_port)
                await asyncio.to_thread(client.start_streams)
            else:
                logger.info("원격 시작 비활성화: 장치 명령 없이 수신만 시작합니다")

            counters = SessionCounters()
            counters.reset(mode.name)
            session = StreamSession(
                session_id=StructuredLogger.get_session_id() or new_session_id(),
                config=config,
                counters=counters,
                color_table=ColorTable.from_hex(config.palette.colors),
                mode=mode,
                started_at_ns=time.time_ns(),
            )
            self._open_reassemblers(session)
        except Exception:
            self._status = "idle"
            raise

        self._session = session
        self._final_snapshot = None

        if config.recording.enabled:
            try:
                self.start_recording()
            except RecordingError as exc:
                logger.error(f"세션 녹음 시작 실패, 녹음 없이 진행합니다: {exc}")

        self._tasks = [
            asyncio.create_task(self._video_loop(session), name="video_stream"),
            asyncio.create_task(asyncio.to_thread(session.audio.run), name="audio_stream"),
        ]
        self._status = "running"
        logger.info(
            f"스트림 세션 시작: session={session.session_id}, mode={mode.name}, "
            f"video_port={config.stream.video_port}, audio_port={config.stream.audio_port}"
        )
        return session

    def _open_reassemblers(self, session: StreamSession) -> None:
        """비디오/오디오 수신기를 생성하고 소켓을 바인드합니다."""
        video = self._video_factory(session.config, session.counters, session.mode)
        video.open()
        try:
            audio = self._audio_factory(
                session.config, session.counters, self._sink_factory(session.config)
            )
            audio.open()
        except BaseException:
            video.stop()
            raise
        session.video = video
        session.audio = audio

    async def run(self) -> None:
        """
        세션을 시작하고 종료 요청 또는 수신 루프 종료까지 기다린 뒤 정리합니다.
        """
        if self._status == "idle":
            await self.start()

        shutdown_waiter = asyncio.create_task(self._shutdown_event.wait())
        try:
            done, _pending = await asyncio.wait(
                [shutdown_waiter] + self._tasks,
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                if task is not shutdown_waiter and task.exception():
                    logger.error(f"수신 루프 오류: {task.exception()}")
        finally:
            shutdown_waiter.cancel()
            await self.stop()

    def request_shutdown(self) -> None:
        """외부(시그널 핸들러 등)에서 종료를 요청합니다."""
        self._shutdown_event.set()

    async def stop(self) -> Optional[CounterSnapshot]:
        """
        세션을 종료합니다. 여러 번 호출해도 안전합니다.

        두 수신 소켓을 닫아 블로킹 수신을 해제하고, 두 루프의 종료를 기다린 뒤
        최종 카운터를 게시합니다.

        반환값:
            Optional[CounterSnapshot]: 최종 카운터 (실행 중인 세션이 없었으면 None)
        """
        session = self._session
        if session is None or self._status in ("idle", "stopping"):
            return self._final_snapshot

        self._status = "stopping"
        self._stopping = True
        logger.info(f"스트림 세션 종료 시작: session={session.session_id}")

        if session.video is not None:
            session.video.stop()
        if session.audio is not None:
            session.audio.stop()

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, BaseException):
                logger.error(f"수신 루프 종료 중 오류 ({task.get_name()}): {result}")
        self._tasks = []

        if self._send_stop_commands and session.config.device.remote_start:
            client = self._client_factory(
                session.config.device.address, session.config.device.control_port
            )
            try:
                await asyncio.to_thread(client.stop_streams)
            except TransportError as exc:
                logger.warning(f"스트림 중지 명령 전송 실패: {exc}")

        final = session.counters.snapshot()
        self._final_snapshot = final
        self._session = None
        self._status = "idle"
        self._shutdown_event = asyncio.Event()

        logger.info(
            f"스트림 세션 종료: session={session.session_id}, "
            f"frames={final.video_frames}, packet_loss={final.video_packet_loss}, "
            f"video={final.video_received_mb}MB, audio_samples={final.audio_samples}, "
            f"audio={final.audio_received_mb}MB, mode_changes={final.mode_changes}"
        )
        return final

    # =========================================================================
    # 비디오 경로 재시작
    # =========================================================================

    async def _video_loop(self, session: StreamSession) -> None:
        """
        비디오 수신 루프를 실행하고, 모드 불일치 신호마다 새 모드로 재시작합니다.
        """
        while True:
            mismatch = await asyncio.to_thread(session.video.run)
            if mismatch is None or self._stopping:
                return
            self._restart_video(session, mismatch)
            if self._stopping:
                session.video.stop()
                return

    def _restart_video(self, session: StreamSession, mismatch: ModeMismatch) -> None:
        """새 모드 높이로 비디오 재조립기를 다시 생성합니다. 오디오는 건드리지 않습니다."""
        session.mode = mismatch.detected_mode
        session.mode_changes.append(mismatch)
        session.counters.record_mode_change(mismatch.detected_mode.name)

        video = self._video_factory(session.config, session.counters, mismatch.detected_mode)
        video.open()
        session.video = video

        self._publish_mode_change(mismatch)
        logger.info(
            f"비디오 경로 재시작: {mismatch.previous_mode.name} → "
            f"{mismatch.detected_mode.name} (end_line={mismatch.end_line})"
        )

    def _publish_mode_change(self, mismatch: ModeMismatch) -> None:
        try:
            self._mode_queue.put_nowait(mismatch)
        except asyncio.QueueFull:
            self._mode_queue.get_nowait()
            self._mode_queue.put_nowait(mismatch)
            logger.warning("모드 변경 알림 큐 오버플로우: 오래된 알림 제거")

    # =========================================================================
    # 세션 중 제어
    # =========================================================================

    def _client(self) -> CommandClient:
        config = self._session.config if self._session is not None else self._config
        return self._client_factory(config.device.address, config.device.control_port)

    async def run_file(self, path: Union[str, Path], mount_run: bool = True) -> None:
        """
        PRG 실행 또는 D64 마운트(+실행) 명령을 전송합니다.

        에러:
            RemoteControlDisabledError: device.remote_start가 꺼져 있을 때
            UnsupportedFileTypeError: 지원하지 않는 확장자
            TransportError: 전송 실패 시
        """
        config = self._session.config if self._session is not None else self._config
        if not config.device.remote_start:
            raise RemoteControlDisabledError(
                "파일 실행은 원격 시작(device.remote_start)이 활성화되어야 합니다"
            )
        await asyncio.to_thread(self._client().run_file, path, mount_run)

    async def send_keystroke(self, key_code: int, shift: bool = False) -> bool:
        """호스트 키 입력을 장치로 전송합니다."""
        return await asyncio.to_thread(self._client().send_keystroke, key_code, shift)

    async def reset(self) -> None:
        """장치 리셋 명령을 전송합니다."""
        await asyncio.to_thread(self._client().reset)

    def start_recording(self, path: Union[str, Path, None] = None) -> Path:
        """
        활성 세션의 오디오 녹음을 시작합니다.

        에러:
            RuntimeError: 활성 세션이 없을 때
        """
        audio = self._active_audio()
        return audio.start_recording(path)

    def stop_recording(self) -> Optional[Path]:
        """
        활성 세션의 오디오 녹음을 중지합니다.

        에러:
            RuntimeError: 활성 세션이 없을 때
        """
        audio = self._active_audio()
        return audio.stop_recording()

    def _active_audio(self) -> AudioReassembler:
        session = self._session
        if session is None or session.audio is None or self._status == "stopping":
            raise RuntimeError("활성 스트림 세션이 없습니다")
        return session.audio

    # =========================================================================
    # 설정 변경
    # =========================================================================

    def apply_config(self, old_config: AppConfig, new_config: AppConfig) -> None:
        """
        새 설정을 다음 세션부터 사용하도록 저장합니다 (ConfigManager 구독 콜백).

        실행 중인 세션은 시작 시점의 설정을 유지합니다.
        """
        self._config = new_config
        if self._session is not None:
            logger.info("설정 변경 수신: 다음 세션부터 적용됩니다")
        else:
            logger.info("설정 변경 적용")
