"""
호스트 키 코드 → 장치 키 코드 변환 모듈입니다.

호스트(Windows 가상 키 코드 기준)에서 입력된 키를
장치 키보드 버퍼에 넣을 PETSCII 코드로 변환합니다.
"""

from __future__ import annotations

# Shift 키 자체는 장치로 전송하지 않습니다.
SHIFT_KEY_CODE = 16

# Shift 조합 키 매핑
_SHIFTED_KEYS: dict[int, int] = {
    9: 3,      # stop (run)
    49: 33,    # !
    50: 64,    # @
    51: 35,    # #
    52: 36,    # $
    53: 37,    # %
    54: 64,    # ^
    55: 38,    # &
    56: 42,    # *
    57: 40,    # (
    48: 41,    # )
    186: 58,   # :
    188: 60,   # <
    189: 45,   # -
    187: 43,   # +
    190: 62,   # >
    191: 63,   # ?
    222: 34,   # "
}

# 일반 키 매핑 (없는 키는 그대로 전달)
_PLAIN_KEYS: dict[int, int] = {
    46: 20,    # delete
    8: 20,     # backspace
    27: 3,     # stop (esc)
    9: 131,    # run (tab)
    36: 19,    # home
    45: 148,   # insert
    37: 157,   # cursor left
    38: 145,   # cursor up
    39: 29,    # cursor right
    40: 17,    # cursor down
    112: 133,  # F1
    113: 134,  # F2
    114: 135,  # F3
    115: 136,  # F4
    116: 137,  # F5
    117: 138,  # F6
    118: 139,  # F7
    119: 140,  # F8
    186: 59,   # ;
    188: 44,   # ,
    187: 61,   # =
    189: 45,   # -
    190: 46,   # .
    191: 47,   # /
    219: 91,   # [
    221: 93,   # ]
    222: 39,   # '
}


def remap_key(key_code: int, shift: bool = False) -> int:
    """
    호스트 키 코드를 장치 키 코드로 변환합니다.

    파라미터:
        key_code: 호스트 가상 키 코드 (0~255)
        shift: Shift 키가 눌린 상태인지 여부

    반환값:
        int: 장치 키 코드. Shift 조합에 매핑이 없으면 0
    """
    key_code &= 0xFF
    if shift:
        return _SHIFTED_KEYS.get(key_code, 0)
    return _PLAIN_KEYS.get(key_code, key_code)
