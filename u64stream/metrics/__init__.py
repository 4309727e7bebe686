"""
메트릭 모듈 패키지

SessionCounters, CounterSnapshot을 외부에서 임포트하기 위한 패키지 초기화입니다.
"""

from u64stream.metrics.session_counters import CounterSnapshot, SessionCounters

__all__ = ["CounterSnapshot", "SessionCounters"]
