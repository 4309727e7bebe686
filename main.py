"""
U64Stream 헤드리스 스트림 세션 실행기

역할:
- 설정 로드 및 커맨드라인 오버라이드 적용
- 구조화 로깅 초기화
- StreamSupervisor로 비디오/오디오 스트림 세션 실행
- 주기적으로 세션 카운터 스냅샷 로깅, 종료 시 최종 카운터 출력
- SIGINT/SIGTERM 핸들러로 graceful shutdown

실행 예시:
    기본 설정 (config.yaml):
        python main.py

    장치 주소 지정 + 녹음:
        python main.py --address 192.168.1.64 --record

    원격 시작 없이 수신만 (장치에서 직접 스트림 시작):
        python main.py --no-remote-start --duration 60
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from pydantic import ValidationError

from u64stream.config.config_manager import (
    ConfigLoadError,
    ConfigManager,
    ConfigValidationError,
)
from u64stream.config.schema import AppConfig
from u64stream.control.command_client import CommandError
from u64stream.logging.structured_logger import setup_logging
from u64stream.metrics.session_counters import CounterSnapshot
from u64stream.supervisor.stream_supervisor import StreamSupervisor

logger = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    """커맨드라인 인자를 파싱합니다."""
    parser = argparse.ArgumentParser(
        description="U64Stream: 장치 비디오/오디오 스트림 수신기"
    )
    parser.add_argument(
        "--config", default="config.yaml", help="설정 파일 경로 (기본: config.yaml)"
    )
    parser.add_argument(
        "--address", help="장치 IP/FQDN (config.yaml 오버라이드)"
    )
    parser.add_argument(
        "--no-remote-start", action="store_true",
        help="도달성 확인과 스트림 시작 명령을 생략하고 수신만 수행",
    )
    parser.add_argument(
        "--record", action="store_true", help="세션 시작과 함께 오디오 녹음"
    )
    parser.add_argument(
        "--duration", type=int, default=0, help="실행 시간 제한 (초, 0=무제한)"
    )
    parser.add_argument(
        "--stats-interval", type=float, default=5.0,
        help="카운터 로깅 주기 (초, 0=비활성화)",
    )
    return parser.parse_args()


def _load_config(args: argparse.Namespace, manager: ConfigManager) -> AppConfig:
    """설정 파일을 로드하고 커맨드라인 오버라이드를 적용합니다."""
    if Path(args.config).exists():
        config = manager.load(args.config)
    else:
        config = manager.load_defaults()

    # Pydantic 모델을 dict로 재구성하여 오버라이드
    config_dict = config.model_dump()
    if args.address:
        config_dict["device"]["address"] = args.address
    if args.no_remote_start:
        config_dict["device"]["remote_start"] = False
    if args.record:
        config_dict["recording"]["enabled"] = True
    try:
        return AppConfig(**config_dict)
    except ValidationError as exc:
        raise ConfigValidationError(
            f"커맨드라인 오버라이드 검증 실패: {exc.error_count()}개 에러"
        ) from exc


def _format_snapshot(snapshot: CounterSnapshot) -> str:
    return (
        f"mode={snapshot.video_mode}, fps={snapshot.fps:.1f} "
        f"({snapshot.ms_per_frame:.1f} ms/frame), frames={snapshot.video_frames}, "
        f"packet_loss={snapshot.video_packet_loss}, video={snapshot.video_received_mb}MB, "
        f"audio_samples={snapshot.audio_samples}, audio={snapshot.audio_received_mb}MB, "
        f"rms={snapshot.audio_rms:.3f}, peak={snapshot.audio_peak:.3f}"
    )


async def _report_stats(supervisor: StreamSupervisor, interval_sec: float) -> None:
    """세션 카운터를 주기적으로 로깅합니다."""
    while True:
        await asyncio.sleep(interval_sec)
        if supervisor.is_running:
            logger.info(f"세션 카운터: {_format_snapshot(supervisor.snapshot())}")


async def _shutdown_after(supervisor: StreamSupervisor, duration_sec: int) -> None:
    """duration_sec 초 후에 세션 종료를 요청합니다."""
    await asyncio.sleep(duration_sec)
    logger.info(f"{duration_sec}초 경과, 세션 자동 종료")
    supervisor.request_shutdown()


async def _main() -> int:
    """비동기 메인 함수입니다."""
    args = _parse_args()

    manager = ConfigManager()
    try:
        config = _load_config(args, manager)
    except ConfigLoadError as exc:
        print(f"설정 로드 실패: {exc}", file=sys.stderr)
        return 1

    session_id = setup_logging(config)
    logger.info(
        f"U64Stream 시작: session_id={session_id}, "
        f"device={config.device.address}, remote_start={config.device.remote_start}"
    )

    supervisor = StreamSupervisor(config)

    # 설정 파일 변경은 다음 세션부터 적용
    manager.subscribe(supervisor.apply_config)
    if Path(args.config).exists():
        manager.watch(args.config)

    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        logger.info("종료 시그널 수신")
        supervisor.request_shutdown()

    loop.add_signal_handler(signal.SIGINT, _signal_handler)
    loop.add_signal_handler(signal.SIGTERM, _signal_handler)

    helpers: list[asyncio.Task] = []
    try:
        await supervisor.start()
    except (CommandError, OSError) as exc:
        logger.error(f"스트림 세션 시작 실패: {exc}")
        manager.stop_watch()
        return 1

    if args.stats_interval > 0:
        helpers.append(asyncio.create_task(_report_stats(supervisor, args.stats_interval)))
    if args.duration > 0:
        helpers.append(asyncio.create_task(_shutdown_after(supervisor, args.duration)))

    try:
        await supervisor.run()
    finally:
        for task in helpers:
            task.cancel()
        await asyncio.gather(*helpers, return_exceptions=True)
        manager.stop_watch()

    final = supervisor.final_snapshot
    if final is not None:
        logger.info(f"최종 카운터: {_format_snapshot(final)}")
    logger.info("U64Stream 종료")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(_main()))
