"""
장치 제어 패키지

CommandClient와 제어 명령 예외를 외부에서 임포트하기 위한 패키지 초기화입니다.
"""

from u64stream.control.command_client import (
    CommandClient,
    CommandError,
    RemoteControlDisabledError,
    TransportError,
    UnreachableDeviceError,
    UnsupportedFileTypeError,
    build_file_command,
    probe_device,
)

__all__ = [
    "CommandClient",
    "CommandError",
    "RemoteControlDisabledError",
    "TransportError",
    "UnreachableDeviceError",
    "UnsupportedFileTypeError",
    "build_file_command",
    "probe_device",
]
