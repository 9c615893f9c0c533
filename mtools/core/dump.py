"""
Hex/ASCII rendering of received messages.
"""

from datetime import datetime
from typing import List

BYTES_PER_LINE = 16


def _printable(byte: int) -> str:
    return chr(byte) if 0x20 <= byte <= 0x7e else '.'


def format_dump(data: bytes) -> List[str]:
    """Render data 16 bytes per line: hex digits, a tab, then printable ASCII.

    The last line is padded so its text column lines up with the others.
    """
    lines = []
    for start in range(0, len(data), BYTES_PER_LINE):
        chunk = data[start:start + BYTES_PER_LINE]
        hex_part = ''.join(f"{b:02x} " for b in chunk)
        text_part = ''.join(_printable(b) for b in chunk)
        pad = BYTES_PER_LINE - len(chunk)
        lines.append(f"{hex_part}{'   ' * pad}\t{text_part}{' ' * pad}")
    return lines


def format_time(when: datetime) -> str:
    """Local wall clock time with microseconds, e.g. ``13:05:09.123456``."""
    return when.strftime('%H:%M:%S.%f')
