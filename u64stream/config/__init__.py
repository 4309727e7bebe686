"""
설정 모듈 패키지

AppConfig 스키마와 ConfigManager를 외부에서 임포트하기 위한 패키지 초기화입니다.
"""

from u64stream.config.config_manager import (
    ConfigFileNotFoundError,
    ConfigLoadError,
    ConfigManager,
    ConfigValidationError,
)
from u64stream.config.schema import AppConfig

__all__ = [
    "AppConfig",
    "ConfigFileNotFoundError",
    "ConfigLoadError",
    "ConfigManager",
    "ConfigValidationError",
]
