"""
원시 오디오 녹음(WAV) 모듈입니다.

역할:
- 수신한 PCM 블록을 48kHz / 16bit / 스테레오 WAV 파일에 순차 기록
- 기본 파일명: U64Stream-audio-YYYYmmddHHMMSS.wav

사용 예시:
    >>> recorder = WavRecorder(default_recording_path("capture"))
    >>> recorder.write(samples)
    >>> recorder.close()
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import numpy as np
import soundfile as sf

from u64stream.audio import CHANNELS, SAMPLE_RATE

logger = logging.getLogger(__name__)

RECORDING_PREFIX = "U64Stream-audio-"


class RecordingError(Exception):
    """녹음 파일 생성/쓰기 실패 시 발생하는 예외"""
    pass


def default_recording_path(output_dir: Union[str, Path], now: Optional[datetime] = None) -> Path:
    """
    타임스탬프 기반 기본 녹음 파일 경로를 생성합니다.

    파라미터:
        output_dir: 녹음 파일 디렉토리
        now: 파일명에 사용할 시각 (None이면 현재 시각)

    반환값:
        Path: <output_dir>/U64Stream-audio-YYYYmmddHHMMSS.wav
    """
    now = now or datetime.now()
    return Path(output_dir) / f"{RECORDING_PREFIX}{now.strftime('%Y%m%d%H%M%S')}.wav"


class WavRecorder:
    """16bit 스테레오 PCM 블록을 WAV 파일에 순차 기록하는 클래스입니다."""

    def __init__(self, path: Union[str, Path], sample_rate: int = SAMPLE_RATE) -> None:
        """
        파라미터:
            path: 출력 WAV 파일 경로 (상위 디렉토리는 자동 생성)
            sample_rate: 샘플링레이트 (Hz)

        에러:
            RecordingError: 파일 생성 실패 시
        """
        self._path = Path(path)
        self._frames_written = 0
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file: Optional[sf.SoundFile] = sf.SoundFile(
                str(self._path),
                mode="w",
                samplerate=sample_rate,
                channels=CHANNELS,
                subtype="PCM_16",
                format="WAV",
            )
        except (OSError, sf.SoundFileError) as exc:
            raise RecordingError(f"녹음 파일 생성 실패: {self._path} ({exc})") from exc

        logger.info(f"녹음 시작: {self._path}")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def frames_written(self) -> int:
        return self._frames_written

    @property
    def closed(self) -> bool:
        return self._file is None

    def write(self, samples: bytes) -> None:
        """
        인터리브 16bit LE 스테레오 PCM 블록을 파일 끝에 추가합니다.

        에러:
            RecordingError: 닫힌 파일이거나 쓰기 실패 시
        """
        if self._file is None:
            raise RecordingError("이미 닫힌 녹음 파일입니다")

        frames = np.frombuffer(samples, dtype="<i2").reshape(-1, CHANNELS)
        try:
            self._file.write(frames)
        except (OSError, sf.SoundFileError) as exc:
            raise RecordingError(f"녹음 파일 쓰기 실패: {exc}") from exc
        self._frames_written += len(frames)

    def close(self) -> None:
        file, self._file = self._file, None
        if file is not None:
            file.close()
            logger.info(f"녹음 종료: {self._path} ({self._frames_written} frames)")
