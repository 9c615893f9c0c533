"""
Message framing strategies.

Every protocol message (data, ``echo``, ``stat``) is one framed unit. Over
UDP a unit is a datagram. Over TCP deployed tools treat whatever a single
``recv`` returns as one message, which holds only while the stream stack
neither splits nor coalesces writes. That behavior is kept as
``SingleReadFraming`` for interoperability; ``LengthPrefixedFraming`` is the
opt-in alternative that both ends must select.
"""

import socket
import struct
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from ..core.config import FramingMode, TransportKind

RECV_SIZE = 65536

_LENGTH_PREFIX = struct.Struct('!I')


class Framing(ABC):
    """Reads and writes whole messages on a socket."""

    @abstractmethod
    def read(self, sock: socket.socket) -> Optional[bytes]:
        """Return the next message, or None at end of stream."""

    @abstractmethod
    def write(self, sock: socket.socket, data: bytes, address: Tuple[str, int]) -> int:
        """Send one message and return the number of message bytes sent."""


class DatagramFraming(Framing):
    """One UDP datagram is one message. Zero-length datagrams are messages too."""

    def read(self, sock: socket.socket) -> Optional[bytes]:
        data, _ = sock.recvfrom(RECV_SIZE)
        return data

    def write(self, sock: socket.socket, data: bytes, address: Tuple[str, int]) -> int:
        return sock.sendto(data, address)


class SingleReadFraming(Framing):
    """One ``recv`` is one message (unsafe over a byte stream, kept for interop)."""

    def read(self, sock: socket.socket) -> Optional[bytes]:
        data = sock.recv(RECV_SIZE)
        if not data:
            return None
        return data

    def write(self, sock: socket.socket, data: bytes, address: Tuple[str, int]) -> int:
        return sock.send(data)


class LengthPrefixedFraming(Framing):
    """Each message is preceded by its length as a 4-byte big-endian integer."""

    def read(self, sock: socket.socket) -> Optional[bytes]:
        header = self._recv_exact(sock, _LENGTH_PREFIX.size)
        if header is None:
            return None
        (length,) = _LENGTH_PREFIX.unpack(header)
        if length > RECV_SIZE:
            raise ConnectionError(f"message length {length} exceeds {RECV_SIZE} bytes")
        if length == 0:
            return b''
        data = self._recv_exact(sock, length)
        if data is None:
            raise ConnectionError(f"stream closed inside a {length}-byte message")
        return data

    def write(self, sock: socket.socket, data: bytes, address: Tuple[str, int]) -> int:
        sock.sendall(_LENGTH_PREFIX.pack(len(data)) + data)
        return len(data)

    @staticmethod
    def _recv_exact(sock: socket.socket, size: int) -> Optional[bytes]:
        # None only when the stream ends before the first byte
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = sock.recv(min(remaining, RECV_SIZE))
            if not chunk:
                if remaining == size:
                    return None
                raise ConnectionError(
                    f"stream closed after {size - remaining} of {size} bytes"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        return b''.join(chunks)


def get_framing(kind: TransportKind, mode: FramingMode = FramingMode.SINGLE_READ) -> Framing:
    """Pick the framing for a transport; UDP is always datagram framed."""
    if kind != TransportKind.TCP:
        return DatagramFraming()
    if mode == FramingMode.LENGTH_PREFIXED:
        return LengthPrefixedFraming()
    return SingleReadFraming()
