"""
스트림 세션 관리 패키지

StreamSupervisor와 StreamSession을 외부에서 임포트하기 위한 패키지 초기화입니다.
"""

from u64stream.supervisor.stream_supervisor import StreamSession, StreamSupervisor

__all__ = ["StreamSession", "StreamSupervisor"]
