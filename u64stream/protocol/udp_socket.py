"""
UDP 수신 소켓 유틸리티 모듈입니다.

수신 루프의 취소 계약:
    수신 루프는 타임아웃 없이 recvfrom()에서 블로킹합니다.
    다른 스레드에서 close_socket()을 호출하면 shutdown()이 블로킹된
    recvfrom()을 깨우고(빈 데이터 또는 OSError), 루프는 정지 플래그를
    확인한 뒤 종료합니다. 별도의 취소 토큰은 없습니다.
"""

from __future__ import annotations

import errno
import logging
import socket

logger = logging.getLogger(__name__)

# 수신 버퍼 크기 (UDP 최대 페이로드)
MAX_DATAGRAM_SIZE = 65535


def open_udp_socket(host: str, port: int, receive_buffer_bytes: int = 0) -> socket.socket:
    """
    지정 주소에 바인드된 UDP 수신 소켓을 생성합니다.

    파라미터:
        host: 바인드 주소 ("0.0.0.0" = 모든 인터페이스)
        port: 바인드 포트 (0이면 OS가 임의 포트 할당)
        receive_buffer_bytes: SO_RCVBUF 요청 크기 (0이면 OS 기본값)

    반환값:
        socket.socket: 바인드된 블로킹 UDP 소켓

    에러:
        OSError: 바인드 실패 시
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if receive_buffer_bytes > 0:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, receive_buffer_bytes)
            except OSError as exc:
                logger.warning(f"SO_RCVBUF 설정 실패 (OS 기본값 사용): {exc}")
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    return sock


def close_socket(sock: socket.socket) -> None:
    """
    소켓을 닫아 다른 스레드의 블로킹 recvfrom()을 해제합니다.

    이미 닫힌 소켓에 대해 호출해도 안전합니다.
    """
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        # 연결되지 않은 UDP 소켓은 ENOTCONN을 반환하지만 대기 중인 수신은 깨어납니다.
        if exc.errno != errno.ENOTCONN:
            logger.debug(f"소켓 shutdown 실패: {exc}")
    sock.close()
