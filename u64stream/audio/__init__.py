"""
오디오 스트림 모듈 패키지

공통 데이터 타입 정의:
- AudioBlock: 디코딩 완료된 오디오 샘플 블록 (패킷 1개 분량)
- 장치 오디오 포맷 상수 (48kHz, 16bit, 스테레오)
"""

from dataclasses import dataclass

# 장치 오디오 포맷
SAMPLE_RATE = 48000
CHANNELS = 2
SAMPLE_WIDTH_BYTES = 2
# 패킷당 샘플 프레임 수: 768 bytes / (2ch * 2 bytes)
SAMPLE_FRAMES_PER_PACKET = 192


@dataclass(frozen=True)
class AudioBlock:
    """
    디코딩 완료된 오디오 샘플 블록입니다.

    필드:
        block_id: 세션 내 블록 순번 (0부터 시작)
        timestamp_ns: 수신 시각 (time.time_ns() 기준)
        data: 인터리브 16bit LE 스테레오 PCM (768 bytes)
        rms: RMS 레벨 (0.0~1.0)
        peak: Peak 레벨 (0.0~1.0)
    """
    block_id: int
    timestamp_ns: int
    data: bytes
    rms: float = 0.0
    peak: float = 0.0

    @property
    def sample_frames(self) -> int:
        return len(self.data) // (CHANNELS * SAMPLE_WIDTH_BYTES)
