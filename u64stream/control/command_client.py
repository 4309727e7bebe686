"""
TCP 제어 명령 클라이언트 모듈입니다.

역할:
- 장치 제어 포트(기본 64)로 SOCKET_CMD 명령 프레임 전송
- 명령마다 짧은 TCP 연결을 열고, 프레임을 쓰고, 닫음 (응답 없음)
- 스트림 시작/중지, PRG 실행, D64 마운트(+실행), 키 입력, 리셋
- 스트림 시작 전 장치 도달성 확인 (제한 시간 내 TCP 연결)

재시도는 하지 않습니다. 실패는 호출자에게 즉시 예외로 전달됩니다.

사용 예시:
    >>> client = CommandClient("192.168.1.64")
    >>> client.start_streams()
    >>> client.run_file("game.prg")
"""

from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import Union

from u64stream.protocol import Opcode
from u64stream.protocol.keymap import SHIFT_KEY_CODE, remap_key
from u64stream.protocol.wire_codec import encode_command

logger = logging.getLogger(__name__)

DEFAULT_CONTROL_PORT = 64
DEFAULT_TIMEOUT_SEC = 5.0

# 지원 파일 확장자 (소문자)
PRG_EXTENSION = "prg"
D64_EXTENSION = "d64"


# =============================================================================
# 예외 정의
# =============================================================================

class CommandError(Exception):
    """제어 명령 관련 예외의 기본 클래스"""
    pass


class UnsupportedFileTypeError(CommandError):
    """PRG/D64 이외의 파일 실행을 요청한 경우 발생하는 예외 (아무것도 전송하지 않음)"""
    pass


class TransportError(CommandError):
    """연결/DNS/전송 실패 시 발생하는 예외"""
    pass


class UnreachableDeviceError(CommandError):
    """도달성 확인 실패 시 발생하는 예외"""
    pass


class RemoteControlDisabledError(CommandError):
    """원격 시작이 비활성화된 상태에서 파일 실행을 요청한 경우 발생하는 예외"""
    pass


# =============================================================================
# 명령 프레임 생성
# =============================================================================

def file_extension(path: Union[str, Path]) -> str:
    """파일명의 마지막 '.' 뒤 문자열을 소문자로 반환합니다. 없으면 빈 문자열."""
    name = Path(path).name
    return name.rsplit(".", 1)[1].lower() if "." in name else ""


def build_file_command(path: Union[str, Path], mount_run: bool = True) -> bytes:
    """
    파일 확장자에 맞는 실행/마운트 명령 프레임을 생성합니다.

    파라미터:
        path: PRG 또는 D64 파일 경로
        mount_run: D64 파일일 때 마운트 후 실행(True) 또는 마운트만(False)

    반환값:
        bytes: 파일 내용이 포함된 명령 프레임

    에러:
        UnsupportedFileTypeError: 확장자가 prg/d64가 아닐 때 (파일을 읽지 않음)
        OSError: 파일 읽기 실패 시
        ValueError: 파일이 길이 필드로 표현할 수 있는 크기를 넘을 때
    """
    extension = file_extension(path)
    if extension == PRG_EXTENSION:
        opcode = Opcode.RUN_PRG
    elif extension == D64_EXTENSION:
        opcode = Opcode.MOUNT_RUN_D64 if mount_run else Opcode.MOUNT_D64
    else:
        raise UnsupportedFileTypeError(
            f"지원하지 않는 파일 형식입니다: {path} (PRG, D64 파일만 지원)"
        )

    payload = Path(path).read_bytes()
    return encode_command(opcode, payload)


# =============================================================================
# 도달성 확인
# =============================================================================

def probe_device(host: str, port: int = DEFAULT_CONTROL_PORT, timeout_ms: int = 1000) -> None:
    """
    제어 포트로 TCP 연결을 시도하여 장치 도달성을 확인합니다.

    파라미터:
        host: 장치 주소 (IP | FQDN)
        port: 제어 포트
        timeout_ms: 연결 제한 시간 (ms)

    에러:
        UnreachableDeviceError: 제한 시간 내 연결 실패 또는 주소 해석 실패 시
    """
    try:
        with socket.create_connection((host, port), timeout=timeout_ms / 1000.0):
            pass
    except OSError as exc:
        raise UnreachableDeviceError(
            f"장치에 연결할 수 없습니다: {host}:{port} ({exc})"
        ) from exc
    logger.info(f"장치 도달성 확인: {host}:{port}")


# =============================================================================
# 명령 클라이언트
# =============================================================================

class CommandClient:
    """
    장치 TCP 제어 포트 클라이언트입니다. 호출 간 상태를 유지하지 않습니다.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_CONTROL_PORT,
        timeout: float = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        """
        파라미터:
            host: 장치 주소 (IP | FQDN)
            port: 제어 포트 (기본 64)
            timeout: 연결/전송 제한 시간 (초)
        """
        self._host = host
        self._port = port
        self._timeout = timeout

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    def send(self, *frames: bytes) -> None:
        """
        하나의 TCP 연결로 명령 프레임들을 순서대로 전송하고 연결을 닫습니다.

        에러:
            TransportError: 연결/주소 해석/전송 실패 시
        """
        try:
            with socket.create_connection((self._host, self._port), timeout=self._timeout) as conn:
                for frame in frames:
                    conn.sendall(frame)
        except OSError as exc:
            raise TransportError(
                f"명령 전송 실패: {self._host}:{self._port} ({exc})"
            ) from exc

        opcodes = ", ".join(f"0x{frame[0]:02X}" for frame in frames if frame)
        logger.info(f"명령 전송: {self._host}:{self._port} [{opcodes}]")

    def start_streams(self) -> None:
        """비디오/오디오 스트림 시작 명령을 한 연결로 전송합니다."""
        self.send(
            encode_command(Opcode.START_VIDEO_STREAM),
            encode_command(Opcode.START_AUDIO_STREAM),
        )

    def stop_streams(self) -> None:
        """비디오/오디오 스트림 중지 명령을 한 연결로 전송합니다."""
        self.send(
            encode_command(Opcode.STOP_VIDEO_STREAM),
            encode_command(Opcode.STOP_AUDIO_STREAM),
        )

    def run_file(self, path: Union[str, Path], mount_run: bool = True) -> None:
        """
        PRG 파일을 실행하거나 D64 파일을 마운트(+실행)합니다.

        에러:
            UnsupportedFileTypeError: 지원하지 않는 확장자 (연결하지 않음)
            TransportError: 전송 실패 시
        """
        frame = build_file_command(path, mount_run)
        self.send(frame)
        logger.info(f"파일 전송 완료: {path} ({len(frame)} bytes)")

    def send_key(self, device_key: int) -> None:
        """장치 키 코드 하나를 전송합니다."""
        self.send(encode_command(Opcode.KEYSTROKE, bytes([device_key & 0xFF])))

    def send_keystroke(self, key_code: int, shift: bool = False) -> bool:
        """
        호스트 키 코드를 장치 키 코드로 변환하여 전송합니다.

        반환값:
            bool: 전송했으면 True (Shift 키 단독 입력은 전송하지 않음)
        """
        if key_code == SHIFT_KEY_CODE:
            return False
        self.send_key(remap_key(key_code, shift))
        return True

    def reset(self) -> None:
        """장치 리셋 명령을 전송합니다."""
        self.send(encode_command(Opcode.RESET))
