"""
U64 Streamer 설정 스키마 정의 모듈입니다.

역할:
- Pydantic v2 BaseModel 기반으로 config.yaml의 전체 구조를 타입 안전하게 정의
- 각 섹션(system, device, stream, audio, recording, palette)을
  독립적인 중첩 모델로 분리하여 유지보수성 확보
- 필드별 기본값, 허용 범위, 유효성 검증(validator)을 포함

사용 예시:
    >>> from u64stream.config.schema import AppConfig
    >>> config = AppConfig(**yaml_data)
    >>> print(config.device.address)
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from u64stream.video.color_table import COLOR_COUNT, DEFAULT_PALETTE

# 모듈 로거 설정
logger = logging.getLogger(__name__)

_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


def _validate_port(value: int, field_name: str) -> int:
    """포트 번호가 1~65535 범위인지 검증합니다."""
    if not 1 <= value <= 65535:
        error_message = f"{field_name}는 1~65535 범위여야 합니다. 입력값: {value}"
        raise ValueError(error_message)
    return value


# =============================================================================
# system 섹션: 시스템 전역 설정
# =============================================================================

class SystemConfig(BaseModel):
    """
    시스템 전역 설정을 정의하는 모델입니다.

    역할:
    - 로깅 레벨 및 포맷 지정
    - 세션 식별자 관리
    """
    # 로그 출력 레벨
    log_level: str = Field(default="INFO", description="로그 레벨 (DEBUG | INFO | WARNING | ERROR)")
    # 로그 출력 포맷
    log_format: str = Field(default="json", description="로그 포맷 (json | text)")
    # 로그 파일 저장 디렉토리 경로
    log_dir: str = Field(default="output/logs", description="로그 저장 디렉토리")
    # 세션 고유 식별자 (빈 문자열이면 UUID로 자동 생성)
    session_id: str = Field(default="", description="세션 ID (비어있으면 UUID 자동생성)")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """로그 레벨이 유효한 Python 로깅 레벨인지 검증합니다."""
        allowed_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        # 대소문자 구분 없이 비교 후 대문자로 정규화
        upper_value = value.upper()
        if upper_value not in allowed_levels:
            error_message = f"log_level은 {allowed_levels} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return upper_value

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        """로그 포맷이 지원되는 형식인지 검증합니다."""
        allowed_formats = ("json", "text")
        if value not in allowed_formats:
            error_message = f"log_format은 {allowed_formats} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value


# =============================================================================
# device 섹션: 원격 장치 제어 설정
# =============================================================================

class DeviceConfig(BaseModel):
    """
    제어 대상 장치의 주소와 원격 제어 동작을 정의하는 모델입니다.

    역할:
    - 장치 IP/FQDN 및 TCP 제어 포트 지정
    - 스트림 시작 전 도달성 확인 타임아웃
    - 원격 시작(스트림 시작 명령, 파일 실행) 허용 여부
    """
    # 장치 IP 주소 또는 FQDN
    address: str = Field(default="192.168.1.64", description="장치 주소 (IP | FQDN)")
    # TCP 제어 포트 (장치 고정값 64)
    control_port: int = Field(default=64, description="TCP 제어 포트")
    # 도달성 확인 타임아웃 (밀리초)
    ping_timeout_ms: int = Field(default=1000, description="도달성 확인 타임아웃 (ms)")
    # 원격 시작 활성화 여부
    remote_start: bool = Field(default=True, description="스트림 원격 시작 / 파일 실행 허용")

    @field_validator("address")
    @classmethod
    def validate_address(cls, value: str) -> str:
        """장치 주소가 비어있지 않은지 검증합니다."""
        stripped = value.strip()
        if not stripped:
            raise ValueError("address는 비어있을 수 없습니다")
        return stripped

    @field_validator("control_port")
    @classmethod
    def validate_control_port(cls, value: int) -> int:
        return _validate_port(value, "control_port")

    @field_validator("ping_timeout_ms")
    @classmethod
    def validate_ping_timeout(cls, value: int) -> int:
        """타임아웃이 양수인지 검증합니다."""
        if value <= 0:
            error_message = f"ping_timeout_ms는 0보다 커야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value


# =============================================================================
# stream 섹션: UDP 수신 설정
# =============================================================================

class StreamConfig(BaseModel):
    """
    UDP 비디오/오디오 스트림 수신 설정을 정의하는 모델입니다.

    역할:
    - 수신 포트 및 바인드 주소 지정
    - 프레임 링 버퍼 깊이 설정
    - 세션 시작 시 가정할 비디오 모드
    """
    # 바인드 주소
    bind_host: str = Field(default="0.0.0.0", description="UDP 바인드 주소")
    # 비디오 수신 포트
    video_port: int = Field(default=11000, description="UDP 비디오 포트")
    # 오디오 수신 포트
    audio_port: int = Field(default=11001, description="UDP 오디오 포트")
    # 프레임 링 버퍼 슬롯 수
    frame_buffer_count: int = Field(default=8, description="프레임 링 버퍼 깊이")
    # 세션 시작 시 가정하는 비디오 모드
    initial_video_mode: str = Field(default="pal", description="초기 비디오 모드 (pal | ntsc)")
    # 소켓 수신 버퍼 요청 크기 (bytes)
    receive_buffer_bytes: int = Field(default=1024 * 1024, description="SO_RCVBUF 요청 크기")

    @field_validator("video_port", "audio_port")
    @classmethod
    def validate_ports(cls, value: int) -> int:
        return _validate_port(value, "stream 포트")

    @field_validator("frame_buffer_count")
    @classmethod
    def validate_frame_buffer_count(cls, value: int) -> int:
        """링 버퍼는 쓰기 슬롯과 게시 슬롯이 분리되도록 2개 이상이어야 합니다."""
        if value < 2:
            error_message = f"frame_buffer_count는 2 이상이어야 합니다. 입력값: {value}"
            raise ValueError(error_message)
        return value

    @field_validator("initial_video_mode")
    @classmethod
    def validate_video_mode(cls, value: str) -> str:
        allowed_modes = ("pal", "ntsc")
        lower_value = value.lower()
        if lower_value not in allowed_modes:
            error_message = f"initial_video_mode는 {allowed_modes} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return lower_value


# =============================================================================
# audio 섹션: 재생 장치 설정
# =============================================================================

class AudioConfig(BaseModel):
    """
    오디오 재생 싱크 설정을 정의하는 모델입니다.

    역할:
    - 재생 장치 클래스 선택 (blocking | callback | none)
    - PortAudio 출력 장치 이름/샘플링레이트 지정
    """
    # 재생 장치 클래스
    output_device: str = Field(default="callback", description="재생 장치 (blocking | callback | none)")
    # PortAudio 출력 장치 이름 (None이면 시스템 기본 장치)
    device_name: Optional[str] = Field(default=None, description="출력 장치 이름")
    # 재생 샘플링레이트 (Hz)
    sample_rate: int = Field(default=48000, description="재생 샘플링레이트 (Hz)")
    # callback 장치의 대기 블록 수 (블록당 192 샘플 프레임)
    queue_blocks: int = Field(default=64, description="callback 장치 대기 블록 수")

    @field_validator("output_device")
    @classmethod
    def validate_output_device(cls, value: str) -> str:
        allowed_devices = ("blocking", "callback", "none")
        if value not in allowed_devices:
            error_message = f"output_device는 {allowed_devices} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value

    @field_validator("sample_rate", "queue_blocks")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError(f"0보다 커야 합니다. 입력값: {value}")
        return value


# =============================================================================
# recording 섹션: 원시 오디오 녹음 설정
# =============================================================================

class RecordingConfig(BaseModel):
    """
    원시 오디오 녹음(WAV) 설정입니다.

    역할:
    - 세션 시작과 동시에 녹음할지 여부
    - 녹음 파일 출력 디렉토리
    """
    # 세션 시작 시 녹음 활성화 여부
    enabled: bool = Field(default=False, description="세션 시작 시 녹음")
    # 녹음 파일 출력 디렉토리
    output_dir: str = Field(default="capture", description="녹음 파일 출력 디렉토리")


# =============================================================================
# palette 섹션: 16색 컬러 테이블
# =============================================================================

class PaletteConfig(BaseModel):
    """
    4bit 색상 인덱스 → RGB 매핑 설정입니다.
    """
    # "#RRGGBB" 형식 16개
    colors: list[str] = Field(default_factory=lambda: list(DEFAULT_PALETTE), description="16색 팔레트")

    @field_validator("colors")
    @classmethod
    def validate_colors(cls, value: list[str]) -> list[str]:
        """정확히 16개의 #RRGGBB 색상인지 검증합니다."""
        if len(value) != COLOR_COUNT:
            error_message = f"colors는 {COLOR_COUNT}개여야 합니다. 입력: {len(value)}개"
            raise ValueError(error_message)
        for color in value:
            if not _HEX_COLOR_PATTERN.match(color):
                raise ValueError(f"색상은 #RRGGBB 형식이어야 합니다. 입력값: '{color}'")
        return [color.upper() for color in value]


# =============================================================================
# 최상위 AppConfig: 모든 섹션을 통합하는 루트 모델
# =============================================================================

class AppConfig(BaseModel):
    """
    애플리케이션 전체 설정을 통합하는 최상위 모델입니다.

    역할:
    - config.yaml의 모든 섹션을 하나의 타입 안전한 객체로 통합
    - Pydantic v2 유효성 검증을 통해 설정 무결성 보장
    - 각 섹션이 누락된 경우 기본값으로 자동 생성

    사용 예시:
        >>> import yaml
        >>> with open("config.yaml") as f:
        ...     raw = yaml.safe_load(f)
        >>> config = AppConfig(**raw)
        >>> print(config.stream.video_port)
        11000
    """
    # 시스템 전역 설정
    system: SystemConfig = Field(default_factory=SystemConfig, description="시스템 설정")
    # 장치 제어 설정
    device: DeviceConfig = Field(default_factory=DeviceConfig, description="장치 설정")
    # UDP 스트림 수신 설정
    stream: StreamConfig = Field(default_factory=StreamConfig, description="스트림 설정")
    # 오디오 재생 설정
    audio: AudioConfig = Field(default_factory=AudioConfig, description="오디오 설정")
    # 오디오 녹음 설정
    recording: RecordingConfig = Field(default_factory=RecordingConfig, description="녹음 설정")
    # 컬러 팔레트 설정
    palette: PaletteConfig = Field(default_factory=PaletteConfig, description="팔레트 설정")
