"""
In-band session protocol shared by msend and mdump.

Control and data messages travel on the same channel and are told apart by
their first five raw bytes: ``b"echo "`` announces a test and resets
counters, ``b"stat "`` carries the sender's total count. Anything else is
data. Data text produced by the sender is ``Message <ordinal>``, which puts
the ordinal at byte offset 8.
"""

import re
from dataclasses import dataclass
from enum import Enum

ECHO_PREFIX = b'echo '
STAT_PREFIX = b'stat '
PREFIX_LEN = 5

DATA_TEXT_PREFIX = 'Message '
SEQUENCE_OFFSET = 8

# C strtol / atoi prefixes
_HEX_NUMBER = re.compile(rb'\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]*)')
_DEC_NUMBER = re.compile(rb'\s*([+-]?)([0-9]*)')


class MessageKind(Enum):
    ECHO = "echo"
    STAT = "stat"
    DATA = "data"


@dataclass(frozen=True)
class Message:
    """A classified protocol message."""
    kind: MessageKind
    raw: bytes

    @property
    def body(self) -> bytes:
        """Bytes after the control prefix (all bytes for data)."""
        if self.kind == MessageKind.DATA:
            return self.raw
        return self.raw[PREFIX_LEN:]

    @property
    def echo_text(self) -> str:
        """Full echo line up to the first NUL, one trailing newline removed."""
        text = _c_string(self.raw)
        if text.endswith(b'\n'):
            text = text[:-1]
        return text.decode('latin-1')

    @property
    def stat_count(self) -> int:
        """Total messages sent, as announced by the sender."""
        return _parse_int(self.body, _DEC_NUMBER, 10)


def _c_string(data: bytes) -> bytes:
    return data.split(b'\0', 1)[0]


def _parse_int(data: bytes, pattern, base: int) -> int:
    match = pattern.match(_c_string(data))
    sign, digits = match.group(1), match.group(2)
    if not digits:
        return 0
    value = int(digits, base)
    return -value if sign == b'-' else value


def classify(data: bytes) -> Message:
    """Classify one received message; first matching prefix wins."""
    if len(data) > PREFIX_LEN:
        prefix = data[:PREFIX_LEN]
        if prefix == ECHO_PREFIX:
            return Message(MessageKind.ECHO, data)
        if prefix == STAT_PREFIX:
            return Message(MessageKind.STAT, data)
    return Message(MessageKind.DATA, data)


def encode_echo(text: str) -> bytes:
    """Echo message, NUL terminated like the deployed sender sends it."""
    return ECHO_PREFIX + text.encode('latin-1') + b'\0'


def encode_stat(count: int) -> bytes:
    return STAT_PREFIX + str(count).encode('ascii')


def format_data_text(ordinal: int, decimal: bool = False) -> bytes:
    if decimal:
        return f"{DATA_TEXT_PREFIX}{ordinal:d}".encode('ascii')
    return f"{DATA_TEXT_PREFIX}{ordinal:x}".encode('ascii')


def parse_sequence(data: bytes) -> int:
    """Ordinal embedded in a data message: hex text at byte offset 8."""
    return _parse_int(data[SEQUENCE_OFFSET:], _HEX_NUMBER, 16)


def sequence_text(data: bytes) -> str:
    """The text at the sequence offset, for mismatch reports."""
    return _c_string(data[SEQUENCE_OFFSET:]).decode('latin-1')

