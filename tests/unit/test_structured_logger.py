"""
구조화 로깅 모듈 단위 테스트

검증 조건:
- JSON 포맷 로그에 session_id, level, module 필드 포함
- <log_dir>/u64stream.log RotatingFileHandler (10MB x 5)
- text 포맷은 세션 ID 앞 8자리를 접두어로 사용
- setup_logging 재호출 시 핸들러 중복 없음
"""

from __future__ import annotations

import json
import logging
import logging.handlers
from io import StringIO

import pytest

from u64stream.config.schema import AppConfig
from u64stream.logging.structured_logger import (
    LOG_FILENAME,
    StructuredLogger,
    _JsonFormatter,
    _TextFormatter,
    setup_logging,
)


# =========================================================================
# 픽스처
# =========================================================================

@pytest.fixture(autouse=True)
def reset_root_logger():
    """각 테스트 후 root logger 핸들러 초기화."""
    yield
    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)
        h.close()


def _make_config(tmp_path, log_format: str = "json", session_id: str = "stream-session-01") -> AppConfig:
    return AppConfig(**{
        "system": {
            "log_level": "DEBUG",
            "log_format": log_format,
            "log_dir": str(tmp_path / "logs"),
            "session_id": session_id,
        },
    })


def _emit(formatter: logging.Formatter, level: int, message: str, **extra) -> str:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    logger = logging.getLogger("u64stream.test.emit")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        logger.log(level, message, extra=extra or None)
    finally:
        logger.removeHandler(handler)
    return stream.getvalue().strip()


# =========================================================================
# setup_logging
# =========================================================================

class TestSetupLogging:
    def test_log_file_created_in_log_dir(self, tmp_path):
        setup_logging(_make_config(tmp_path))
        log_file = tmp_path / "logs" / LOG_FILENAME
        assert log_file.exists()
        assert log_file.read_text(encoding="utf-8")

    def test_returns_explicit_session_id(self, tmp_path):
        assert setup_logging(_make_config(tmp_path), session_id="custom-sid") == "custom-sid"
        assert StructuredLogger.get_session_id() == "custom-sid"

    def test_session_id_from_config(self, tmp_path):
        setup_logging(_make_config(tmp_path))
        assert StructuredLogger.get_session_id() == "stream-session-01"

    def test_generated_session_id_is_short_hex(self, tmp_path):
        setup_logging(_make_config(tmp_path, session_id=""))
        sid = StructuredLogger.get_session_id()
        assert len(sid) == 8
        int(sid, 16)

    def test_log_level_applied(self, tmp_path):
        config = _make_config(tmp_path)
        config.system.log_level = "WARNING"
        setup_logging(config)
        assert logging.getLogger().level == logging.WARNING

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        config = _make_config(tmp_path)
        setup_logging(config)
        handler_count = len(logging.getLogger().handlers)
        setup_logging(config)
        assert len(logging.getLogger().handlers) == handler_count

    def test_rotating_handler_limits(self, tmp_path):
        setup_logging(_make_config(tmp_path))
        rotating = [
            h for h in logging.getLogger().handlers
            if isinstance(h, logging.handlers.RotatingFileHandler)
        ]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 10 * 1024 * 1024
        assert rotating[0].backupCount == 5

    def test_text_format_uses_text_formatter(self, tmp_path):
        setup_logging(_make_config(tmp_path, log_format="text"))
        formatters = {type(h.formatter) for h in logging.getLogger().handlers}
        assert formatters == {_TextFormatter}


# =========================================================================
# 포맷터
# =========================================================================

class TestJsonFormatter:
    def test_common_fields(self):
        data = json.loads(_emit(_JsonFormatter(session_id="abc"), logging.INFO, "비디오 수신 대기"))
        assert data["session_id"] == "abc"
        assert data["level"] == "INFO"
        assert data["module"] == "u64stream.test.emit"
        assert data["message"] == "비디오 수신 대기"
        assert data["thread"] == "MainThread"

    def test_extra_fields_included(self):
        output = _emit(_JsonFormatter(session_id="abc"), logging.INFO, "bound", video_port=11000)
        assert json.loads(output)["video_port"] == 11000


class TestTextFormatter:
    def test_session_prefix_and_level(self):
        output = _emit(_TextFormatter(session_id="text-session-002"), logging.ERROR, "전송 실패")
        assert "[text-ses]" in output
        assert "ERROR" in output
        assert "전송 실패" in output

    def test_missing_session_id_placeholder(self):
        output = _emit(_TextFormatter(), logging.INFO, "message")
        assert "[no-sid]" in output


class TestStructuredLogger:
    def test_get_returns_named_logger(self):
        logger = StructuredLogger.get("u64stream.video")
        assert isinstance(logger, logging.Logger)
        assert logger is logging.getLogger("u64stream.video")
