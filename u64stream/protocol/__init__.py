"""
장치 와이어 프로토콜 패키지

공통 데이터 타입 정의:
- VideoPacketHeader: UDP 비디오 데이터그램 헤더
- AudioPacket: UDP 오디오 데이터그램 (770 bytes)
- Opcode: TCP 제어 명령 코드
"""

from dataclasses import dataclass
from enum import IntEnum


class Opcode(IntEnum):
    """
    TCP 제어 포트(64)로 전송하는 SOCKET_CMD 명령 코드입니다.

    각 명령은 [opcode, 0xFF, 길이(LE), 페이로드] 형태로 전송됩니다.
    """
    RUN_PRG = 0x02
    KEYSTROKE = 0x03
    RESET = 0x04
    MOUNT_D64 = 0x0A
    MOUNT_RUN_D64 = 0x0B
    START_VIDEO_STREAM = 0x20
    START_AUDIO_STREAM = 0x21
    STOP_VIDEO_STREAM = 0x30
    STOP_AUDIO_STREAM = 0x31


@dataclass(frozen=True)
class VideoPacketHeader:
    """
    UDP 비디오 데이터그램 헤더입니다 (12 bytes, little-endian).

    필드:
        sequence_number: 패킷 순번 (16bit)
        frame_number: 프레임 순번 (16bit)
        line_number: 시작 라인 (16bit, bit 15 = 프레임 끝 플래그, bit 0~11 = 라인 인덱스)
        pixels_per_line: 라인당 픽셀 수 (16bit)
        bits_per_pixel: 픽셀당 비트 수 (8bit)
        lines_per_packet: 패킷당 라인 수 (8bit)
        reserved: 예약 필드 (16bit)
    """
    sequence_number: int
    frame_number: int
    line_number: int
    pixels_per_line: int
    bits_per_pixel: int
    lines_per_packet: int
    reserved: int = 0

    @property
    def line_index(self) -> int:
        """프레임 끝 플래그를 제외한 실제 라인 인덱스 (line_number & 0xFFF)"""
        return self.line_number & 0x0FFF

    @property
    def is_end_of_frame(self) -> bool:
        """bit 15가 설정되어 있으면 프레임의 마지막 패킷입니다."""
        return bool(self.line_number & 0x8000)

    @property
    def bytes_per_line(self) -> int:
        """한 라인의 바이트 수 (pixels_per_line * bits_per_pixel / 8)"""
        return (self.pixels_per_line * self.bits_per_pixel) // 8


@dataclass(frozen=True)
class AudioPacket:
    """
    유효성 검증을 통과한 UDP 오디오 데이터그램입니다.

    필드:
        reserved: 선두 2 bytes 헤더
        samples: 16bit 스테레오 인터리브 PCM 768 bytes (192 샘플 프레임)
    """
    reserved: bytes
    samples: memoryview
