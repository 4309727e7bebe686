"""
U64 Streamer 패키지

Ultimate 64 장치의 UDP 비디오/오디오 스트림을 수신·재조립하고
TCP 제어 포트로 장치를 원격 제어합니다.
"""

__version__ = "1.0.0"
