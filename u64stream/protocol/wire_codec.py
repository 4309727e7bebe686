"""
장치 와이어 포맷 인코더/디코더 모듈입니다.

역할:
- UDP 비디오 데이터그램 헤더 디코딩 (12 bytes, little-endian)
- UDP 오디오 데이터그램 크기 검증 및 샘플 페이로드 추출
- TCP 제어 명령 프레임 인코딩

프로토콜 구조:
============================================================

┌──────────────────────────────────────────────────────────┐
│ VIDEO HEADER (12 bytes, little-endian)                   │
├──────────────────────────────────────────────────────────┤
│ sequence_number  │ 2 bytes │ uint16                      │
│ frame_number     │ 2 bytes │ uint16                      │
│ line_number      │ 2 bytes │ uint16 (bit15 = 프레임 끝)  │
│ pixels_per_line  │ 2 bytes │ uint16                      │
│ bits_per_pixel   │ 1 byte  │ uint8                       │
│ lines_per_packet │ 1 byte  │ uint8                       │
│ reserved         │ 2 bytes │ uint16                      │
├──────────────────────────────────────────────────────────┤
│ PIXEL PAYLOAD (4bit 색상 인덱스, 1 byte당 2 픽셀)        │
└──────────────────────────────────────────────────────────┘

┌──────────────────────────────────────────────────────────┐
│ AUDIO PACKET (정확히 770 bytes)                          │
├──────────────────────────────────────────────────────────┤
│ reserved         │ 2 bytes   │                           │
│ samples          │ 768 bytes │ int16 stereo x 192        │
└──────────────────────────────────────────────────────────┘

┌──────────────────────────────────────────────────────────┐
│ COMMAND FRAME                                            │
├──────────────────────────────────────────────────────────┤
│ opcode           │ 1 byte        │                       │
│ marker           │ 1 byte        │ 항상 0xFF             │
│ length           │ 2 또는 3 bytes │ little-endian        │
│ payload          │ length bytes  │                       │
└──────────────────────────────────────────────────────────┘

사용 예시:
    >>> header = decode_video_header(datagram)
    >>> packet = decode_audio_packet(datagram)
    >>> frame = encode_command(Opcode.RESET)
"""

from __future__ import annotations

import struct
from typing import Tuple

from u64stream.protocol import AudioPacket, Opcode, VideoPacketHeader

# 필수 헤더 필드 포맷 (reserved 제외 10 bytes)
# H = uint16 → sequence_number, frame_number, line_number, pixels_per_line
# B = uint8  → bits_per_pixel, lines_per_packet
_REQUIRED_HEADER_FORMAT = "<HHHHBB"
MIN_HEADER_SIZE = struct.calcsize(_REQUIRED_HEADER_FORMAT)  # = 10 bytes

# reserved 포함 전체 헤더 포맷
VIDEO_HEADER_FORMAT = "<HHHHBBH"
VIDEO_HEADER_SIZE = struct.calcsize(VIDEO_HEADER_FORMAT)  # = 12 bytes

# 오디오 패킷 고정 크기
AUDIO_PACKET_SIZE = 770
AUDIO_HEADER_SIZE = 2
AUDIO_PAYLOAD_SIZE = AUDIO_PACKET_SIZE - AUDIO_HEADER_SIZE  # = 768 bytes

# 명령 프레임 고정 마커
COMMAND_MARKER = 0xFF

# 3 bytes 길이 필드를 사용하는 명령 (16MB까지의 D64 이미지)
_THREE_BYTE_LENGTH_OPCODES = frozenset({Opcode.MOUNT_D64, Opcode.MOUNT_RUN_D64})


class WireFormatError(ValueError):
    """와이어 포맷 처리 중 발생하는 에러의 기본 클래스입니다."""
    pass


class MalformedHeaderError(WireFormatError):
    """데이터그램이 비디오 헤더를 담기에 너무 짧을 때 발생합니다."""
    pass


class InvalidPacketSizeError(WireFormatError):
    """오디오 데이터그램 크기가 770 bytes가 아닐 때 발생합니다."""
    pass


class CopyOverflowError(WireFormatError):
    """페이로드 복사가 스캔 버퍼 범위를 벗어날 때 발생합니다."""
    pass


# =============================================================================
# 비디오 헤더
# =============================================================================

def decode_video_header(data: bytes) -> VideoPacketHeader:
    """
    UDP 비디오 데이터그램의 헤더를 디코딩합니다.

    파라미터:
        data: 수신한 데이터그램 (최소 10 bytes)

    반환값:
        VideoPacketHeader: 디코딩된 헤더 (reserved가 없으면 0)

    에러:
        MalformedHeaderError: 데이터가 10 bytes 미만일 때
    """
    if len(data) < MIN_HEADER_SIZE:
        raise MalformedHeaderError(
            f"비디오 헤더가 너무 짧습니다: {len(data)} bytes "
            f"(최소 {MIN_HEADER_SIZE} bytes)"
        )

    (
        sequence_number,
        frame_number,
        line_number,
        pixels_per_line,
        bits_per_pixel,
        lines_per_packet,
    ) = struct.unpack_from(_REQUIRED_HEADER_FORMAT, data, 0)

    reserved = 0
    if len(data) >= VIDEO_HEADER_SIZE:
        (reserved,) = struct.unpack_from("<H", data, MIN_HEADER_SIZE)

    return VideoPacketHeader(
        sequence_number=sequence_number,
        frame_number=frame_number,
        line_number=line_number,
        pixels_per_line=pixels_per_line,
        bits_per_pixel=bits_per_pixel,
        lines_per_packet=lines_per_packet,
        reserved=reserved,
    )


def encode_video_header(header: VideoPacketHeader) -> bytes:
    """VideoPacketHeader를 12 bytes 와이어 포맷으로 인코딩합니다."""
    return struct.pack(
        VIDEO_HEADER_FORMAT,
        header.sequence_number,
        header.frame_number,
        header.line_number,
        header.pixels_per_line,
        header.bits_per_pixel,
        header.lines_per_packet,
        header.reserved,
    )


def split_video_datagram(data: bytes) -> Tuple[VideoPacketHeader, memoryview]:
    """
    비디오 데이터그램을 헤더와 픽셀 페이로드로 분리합니다.

    페이로드는 항상 12번째 바이트부터 시작합니다.
    헤더가 10~11 bytes인 경우 페이로드는 비어 있습니다.
    """
    header = decode_video_header(data)
    return header, memoryview(data)[VIDEO_HEADER_SIZE:]


# =============================================================================
# 오디오 패킷
# =============================================================================

def decode_audio_packet(data: bytes) -> AudioPacket:
    """
    UDP 오디오 데이터그램을 검증하고 샘플 페이로드를 추출합니다.

    파라미터:
        data: 수신한 데이터그램

    반환값:
        AudioPacket: 768 bytes 샘플 뷰 (offset 2부터)

    에러:
        InvalidPacketSizeError: 길이가 정확히 770 bytes가 아닐 때
    """
    if len(data) != AUDIO_PACKET_SIZE:
        raise InvalidPacketSizeError(
            f"오디오 패킷 크기 오류: {len(data)} bytes (필요: {AUDIO_PACKET_SIZE} bytes)"
        )

    view = memoryview(data)
    return AudioPacket(
        reserved=bytes(view[:AUDIO_HEADER_SIZE]),
        samples=view[AUDIO_HEADER_SIZE:],
    )


# =============================================================================
# 명령 프레임
# =============================================================================

def command_length_width(opcode: int) -> int:
    """명령 코드별 길이 필드 폭(bytes)을 반환합니다. D64 마운트는 3, 나머지는 2."""
    return 3 if opcode in _THREE_BYTE_LENGTH_OPCODES else 2


def encode_command(opcode: int, payload: bytes = b"") -> bytes:
    """
    TCP 제어 명령 프레임을 생성합니다.

    형식: [opcode, 0xFF, len_lo, len_hi, (len_hi2), ...payload]

    파라미터:
        opcode: 명령 코드 (Opcode)
        payload: 명령 페이로드 (없으면 빈 bytes)

    반환값:
        bytes: 전송할 명령 프레임

    에러:
        ValueError: opcode가 1 byte 범위를 벗어나거나
            페이로드 길이가 길이 필드로 표현할 수 없을 때
    """
    if not 0 <= opcode <= 0xFF:
        raise ValueError(f"명령 코드는 0x00~0xFF 범위여야 합니다. 입력값: {opcode}")

    width = command_length_width(opcode)
    length = len(payload)
    if length >= 1 << (8 * width):
        raise ValueError(
            f"페이로드가 너무 큽니다: {length} bytes "
            f"(opcode=0x{opcode:02X}, 길이 필드 {width} bytes)"
        )

    header = bytes([opcode, COMMAND_MARKER]) + length.to_bytes(width, "little")
    return header + bytes(payload)
