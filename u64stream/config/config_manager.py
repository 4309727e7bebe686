"""
U64Stream 설정 관리 모듈입니다.

역할:
- YAML 파일 → 환경변수 오버라이드(U64_) → Pydantic 검증 순서로 AppConfig 구성
- dot-notation 조회 (예: "device.address")
- watchdog으로 설정 파일 변경 감시, 검증 통과 시 구독자 통보
- 리로드 실패 시 이전 설정 유지

실행 중인 스트림 세션은 시작 시점의 설정을 유지하며,
변경된 설정은 다음 세션 시작부터 적용됩니다.

사용 예시:
    >>> manager = ConfigManager()
    >>> config = manager.load("config.yaml")
    >>> manager.get("stream.video_port")
    11000
    >>> manager.subscribe(supervisor.apply_config)
    >>> manager.watch()
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import yaml
from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from u64stream.config.schema import AppConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "U64_"

# (이전 설정, 새 설정) -> None
ConfigChangeCallback = Callable[[AppConfig, AppConfig], None]


class ConfigLoadError(Exception):
    """설정을 구성할 수 없을 때 발생하는 예외의 기본 클래스"""
    pass


class ConfigValidationError(ConfigLoadError):
    """스키마 검증 실패"""
    pass


class ConfigFileNotFoundError(ConfigLoadError):
    """설정 파일 없음"""
    pass


# =============================================================================
# 환경변수 오버라이드
# =============================================================================

def coerce_env_value(value: str) -> Any:
    """환경변수 문자열을 bool → int → float → str 순서로 해석합니다."""
    lowered = value.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            continue
    return value


def apply_env_overrides(raw: dict, environ: Optional[Mapping[str, str]] = None) -> int:
    """
    U64_<SECTION>_<FIELD> 환경변수를 raw 설정 딕셔너리에 덮어씁니다.

    첫 번째 '_'가 섹션과 필드를 나눕니다.
    예: U64_DEVICE_ADDRESS → device.address, U64_STREAM_VIDEO_PORT → stream.video_port

    파라미터:
        raw: YAML에서 읽은 설정 딕셔너리 (제자리 수정)
        environ: 환경변수 매핑 (기본: os.environ)

    반환값:
        int: 적용한 오버라이드 수
    """
    environ = os.environ if environ is None else environ
    applied = 0
    for key in sorted(environ):
        if not key.startswith(ENV_PREFIX):
            continue
        section_name, _, field_name = key[len(ENV_PREFIX):].lower().partition("_")
        if not section_name or not field_name:
            logger.debug(f"환경변수 무시 (섹션/필드 구분 없음): {key}")
            continue
        section = raw.setdefault(section_name, {})
        if not isinstance(section, dict):
            logger.debug(f"환경변수 무시 ({section_name} 섹션이 매핑이 아님): {key}")
            continue
        section[field_name] = coerce_env_value(environ[key])
        logger.info(f"환경변수 오버라이드: {section_name}.{field_name} ← {key}")
        applied += 1
    return applied


# =============================================================================
# 파일 감시
# =============================================================================

class _ConfigFileHandler(FileSystemEventHandler):
    """
    감시 중인 설정 파일의 수정/생성/이동 이벤트를 ConfigManager.reload()로 전달합니다.

    편집기가 임시 파일을 쓰고 이름을 바꾸는 방식으로 저장하면
    modified 대신 created 또는 moved 이벤트가 발생합니다.
    """

    def __init__(self, manager: "ConfigManager", filename: str) -> None:
        super().__init__()
        self._manager = manager
        self._filename = filename

    def _targets_config(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(path and Path(str(path)).name == self._filename for path in paths)

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._targets_config(event):
            self._manager.reload()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._targets_config(event):
            self._manager.reload()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._targets_config(event):
            self._manager.reload()


# =============================================================================
# ConfigManager
# =============================================================================

class ConfigManager:
    """
    AppConfig를 로드/조회/감시하는 클래스입니다.

    스레드 안전성:
        watchdog 이벤트는 Observer 스레드에서 reload()를 호출하므로
        활성 설정 교체와 조회는 RLock으로 보호합니다.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        """
        파라미터:
            environ: 오버라이드에 사용할 환경변수 매핑 (기본: os.environ)
        """
        self._environ = environ
        self._lock = threading.RLock()
        self._config: Optional[AppConfig] = None
        self._source: Optional[Path] = None
        self._subscribers: list[ConfigChangeCallback] = []
        self._observer: Optional[Any] = None

    @property
    def config(self) -> Optional[AppConfig]:
        with self._lock:
            return self._config

    @property
    def source(self) -> Optional[Path]:
        """마지막으로 로드한 설정 파일 경로 (기본 설정 사용 시 None)"""
        return self._source

    # =========================================================================
    # 로드
    # =========================================================================

    def load(self, filepath: str | Path) -> AppConfig:
        """
        YAML 설정 파일을 로드하여 활성 설정으로 사용합니다.

        에러:
            ConfigFileNotFoundError: 파일이 없을 때
            ConfigLoadError: 읽기/YAML 파싱 실패 또는 최상위가 매핑이 아닐 때
            ConfigValidationError: 스키마 검증 실패 시
        """
        path = Path(filepath)
        if not path.is_file():
            raise ConfigFileNotFoundError(f"설정 파일을 찾을 수 없습니다: {path}")

        config = self._build(self._read_yaml(path))
        with self._lock:
            self._config = config
            self._source = path

        logger.info(
            f"설정 로드: {path} (device={config.device.address}:{config.device.control_port}, "
            f"video_port={config.stream.video_port}, audio_port={config.stream.audio_port}, "
            f"remote_start={config.device.remote_start})"
        )
        return config

    def load_defaults(self) -> AppConfig:
        """설정 파일 없이 기본값 + 환경변수 오버라이드로 설정을 구성합니다."""
        config = self._build({})
        with self._lock:
            self._config = config
            self._source = None
        logger.info("설정 파일 없음: 기본 설정 사용")
        return config

    def reload(self) -> bool:
        """
        마지막으로 로드한 파일을 다시 읽습니다.

        검증을 통과하면 활성 설정을 교체하고 구독자에게 알립니다.
        실패하면 이전 설정을 그대로 유지합니다.

        반환값:
            bool: 새 설정을 적용했으면 True
        """
        path = self._source
        if path is None:
            logger.warning("리로드할 설정 파일이 없습니다")
            return False

        try:
            new_config = self._build(self._read_yaml(path))
        except ConfigLoadError as exc:
            logger.error(f"설정 리로드 실패, 이전 설정 유지: {exc}")
            return False

        with self._lock:
            previous, self._config = self._config, new_config
        logger.info(f"설정 리로드 완료: {path}")

        if previous is not None:
            self._notify(previous, new_config)
        return True

    def validate_schema(self, raw_config: dict) -> bool:
        """딕셔너리가 AppConfig 스키마를 만족하는지 검사합니다."""
        try:
            AppConfig(**raw_config)
        except ValidationError as exc:
            logger.warning(f"스키마 검증 실패: {exc.error_count()}개 에러")
            return False
        return True

    # =========================================================================
    # 조회
    # =========================================================================

    def get(self, key: str, default: Any = None) -> Any:
        """
        dot-notation으로 설정값을 조회합니다. 없는 키는 default를 반환합니다.

        에러:
            RuntimeError: 설정을 로드하기 전 호출 시
        """
        with self._lock:
            node: Any = self._config
        if node is None:
            raise RuntimeError("설정이 로드되지 않았습니다. load() 또는 load_defaults()를 먼저 호출하세요")

        for part in key.split("."):
            if isinstance(node, dict):
                if part not in node:
                    return default
                node = node[part]
            elif part in getattr(type(node), "model_fields", {}):
                node = getattr(node, part)
            else:
                return default
        return node

    # =========================================================================
    # 구독 / 감시
    # =========================================================================

    def subscribe(self, callback: ConfigChangeCallback) -> None:
        self._subscribers.append(callback)
        logger.debug(f"설정 변경 구독자 등록 ({len(self._subscribers)})")

    def unsubscribe(self, callback: ConfigChangeCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def watch(self, filepath: str | Path | None = None) -> None:
        """
        설정 파일 감시를 시작합니다.

        파라미터:
            filepath: 감시할 파일 (None이면 마지막으로 로드한 파일)
        """
        path = Path(filepath) if filepath is not None else self._source
        if path is None:
            logger.warning("감시할 설정 파일이 없어 감시를 시작하지 않습니다")
            return
        if self._observer is not None:
            return
        if self._source is None:
            self._source = path

        observer = Observer()
        observer.schedule(
            _ConfigFileHandler(self, path.name),
            path=str(path.resolve().parent),
            recursive=False,
        )
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"설정 파일 감시 시작: {path}")

    def stop_watch(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)
        logger.info("설정 파일 감시 중지")

    # =========================================================================
    # 내부
    # =========================================================================

    def _read_yaml(self, path: Path) -> dict:
        try:
            with open(path, "r", encoding="utf-8") as stream:
                raw = yaml.safe_load(stream)
        except yaml.YAMLError as exc:
            raise ConfigLoadError(f"YAML 파싱 실패: {path}: {exc}") from exc
        except OSError as exc:
            raise ConfigLoadError(f"설정 파일 읽기 실패: {path}: {exc}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ConfigLoadError(
                f"설정 파일 최상위는 매핑이어야 합니다: {path} ({type(raw).__name__})"
            )
        return raw

    def _build(self, raw: dict) -> AppConfig:
        """환경변수 오버라이드를 적용하고 AppConfig로 검증합니다."""
        apply_env_overrides(raw, self._environ)
        try:
            return AppConfig(**raw)
        except ValidationError as exc:
            for error in exc.errors():
                location = ".".join(str(part) for part in error["loc"])
                logger.error(
                    f"설정 검증 실패: {location}: {error['msg']} "
                    f"(입력값: {error.get('input', 'N/A')})"
                )
            raise ConfigValidationError(
                f"설정 스키마 검증 실패: {exc.error_count()}개 에러"
            ) from exc

    def _notify(self, previous: AppConfig, current: AppConfig) -> None:
        """구독자 하나가 실패해도 나머지에게는 계속 알립니다."""
        for callback in list(self._subscribers):
            try:
                callback(previous, current)
            except Exception as exc:
                logger.error(f"설정 변경 구독자 오류: {exc}", exc_info=True)
