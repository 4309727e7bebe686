"""
U64Launcher: PRG/D64 파일을 LAN으로 장치에 전송하는 커맨드라인 도구입니다.

실행 예시:
    u64launcher autorun.prg 192.168.2.64
    u64launcher disk.d64 192.168.2.64 64

종료 코드:
    0: 명령 전송 성공
    1: 지원하지 않는 파일 형식 / 파일 읽기 실패 / 전송 실패
    2: 인자 개수 오류 (아무것도 전송하지 않음)
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from u64stream import __version__
from u64stream.control.command_client import (
    DEFAULT_CONTROL_PORT,
    CommandClient,
    TransportError,
    UnsupportedFileTypeError,
)

logger = logging.getLogger(__name__)

BANNER = f"U64Launcher v{__version__}"
USAGE_EXAMPLE = "Example: u64launcher autorun.prg 192.168.2.64"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="u64launcher",
        description="PRG(실행) 또는 D64(마운트 후 실행) 파일을 장치로 전송합니다.",
        epilog=USAGE_EXAMPLE,
    )
    parser.add_argument("file", help="PRG 또는 D64 파일 경로")
    parser.add_argument("ip_address", help="장치 IP 주소 또는 FQDN")
    parser.add_argument(
        "port", nargs="?", type=int, default=DEFAULT_CONTROL_PORT,
        help=f"TCP 제어 포트 (기본: {DEFAULT_CONTROL_PORT})",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    커맨드라인 진입점입니다.

    파라미터:
        argv: 인자 목록 (None이면 sys.argv[1:])

    반환값:
        int: 프로세스 종료 코드
    """
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    print(f"{BANNER}\n")

    parser = _build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        # argparse는 인자 오류 시 usage를 출력하고 2로 종료합니다.
        return int(exc.code or 0)

    client = CommandClient(args.ip_address, args.port)
    try:
        client.run_file(args.file)
    except UnsupportedFileTypeError:
        print("File not supported.\nOnly PRG & D64 files are supported.", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"파일을 읽을 수 없습니다: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"파일이 너무 큽니다: {exc}", file=sys.stderr)
        return 1
    except TransportError as exc:
        print(f"전송 실패: {exc}", file=sys.stderr)
        return 1

    print(f"전송 완료: {args.file} → {args.ip_address}:{args.port}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
