"""
스트림 세션 로깅 설정 모듈입니다.

역할:
- 콘솔 + <log_dir>/u64stream.log 순환 파일(10MB x 5)로 루트 로거 구성
- json 포맷: python-json-logger 레코드에 session_id/module/level/thread 필드 추가
- text 포맷: 세션 ID 앞 8자리와 스레드 이름을 접두어로 사용
- 수신 루프는 워커 스레드에서 실행되므로 thread 필드로 video/audio 루프를 구분

사용 예시:
    >>> session_id = setup_logging(config)
    >>> logger = StructuredLogger.get("u64stream.video")
    >>> logger.info("비디오 수신 대기", extra={"video_port": 11000})
"""

from __future__ import annotations

import logging
import logging.handlers
import uuid
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from u64stream.config.schema import AppConfig, SystemConfig

LOG_FILENAME = "u64stream.log"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# text 포맷에서 세션 ID가 없을 때 쓰는 접두어
_NO_SESSION = "no-sid"

_active_session_id: str = ""


def new_session_id() -> str:
    """8자리 16진수 세션 ID를 생성합니다."""
    return uuid.uuid4().hex[:8]


def setup_logging(config: AppConfig, session_id: Optional[str] = None) -> str:
    """
    스트림 세션용 루트 로거를 구성합니다. 다시 호출하면 기존 핸들러를 교체합니다.

    파라미터:
        config: AppConfig (system 섹션만 사용)
        session_id: 세션 식별자. 없으면 system.session_id, 그것도 비어있으면 새로 생성

    반환값:
        str: 로그 레코드에 기록될 세션 ID
    """
    global _active_session_id

    system = config.system
    _active_session_id = session_id or system.session_id or new_session_id()
    level = logging.getLevelName(system.log_level)

    root = logging.getLogger()
    for old_handler in list(root.handlers):
        root.removeHandler(old_handler)
        old_handler.close()
    root.setLevel(level)

    for handler in _open_handlers(Path(system.log_dir)):
        handler.setLevel(level)
        handler.setFormatter(_make_formatter(system, _active_session_id))
        root.addHandler(handler)

    logging.getLogger(__name__).info(
        f"로깅 구성 완료: session={_active_session_id}, level={system.log_level}, "
        f"format={system.log_format}, file={Path(system.log_dir) / LOG_FILENAME}"
    )
    return _active_session_id


def _open_handlers(log_dir: Path) -> list[logging.Handler]:
    """콘솔 핸들러와 순환 파일 핸들러를 만듭니다. 파일을 열 수 없으면 콘솔만 사용합니다."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_dir / LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )
    except OSError as exc:
        logging.getLogger(__name__).warning(
            f"로그 파일을 열 수 없어 콘솔에만 기록합니다: {log_dir} ({exc})"
        )
    return handlers


def _make_formatter(system: SystemConfig, session_id: str) -> logging.Formatter:
    if system.log_format == "json":
        return _JsonFormatter(session_id=session_id)
    return _TextFormatter(session_id=session_id)


class _JsonFormatter(jsonlogger.JsonFormatter):
    """레코드마다 session_id, module, level, thread 필드를 붙이는 JSON 포맷터"""

    def __init__(self, session_id: str = "") -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        self._session_id = session_id

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            session_id=self._session_id,
            module=record.name,
            level=record.levelname,
            thread=record.threadName,
        )


class _TextFormatter(logging.Formatter):
    # 예: 2024-05-01 12:00:00 [a1b2c3d4] INFO     (video_stream) u64stream.video: ...
    def __init__(self, session_id: str = "") -> None:
        prefix = session_id[:8] if session_id else _NO_SESSION
        super().__init__(
            fmt=f"%(asctime)s [{prefix}] %(levelname)-8s (%(threadName)s) %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class StructuredLogger:
    """모듈 로거 조회와 현재 세션 ID 조회를 제공합니다."""

    @staticmethod
    def get(name: str) -> logging.Logger:
        return logging.getLogger(name)

    @staticmethod
    def get_session_id() -> str:
        return _active_session_id
