"""
Shared fixtures and fakes for the mtools test suite.
"""

import errno
import logging
import logging.handlers
import socket
from typing import List, Optional

import pytest

from mtools.core.logger import REPORT_LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo setup_logging between tests so caplog sees report lines."""
    yield
    own_handlers = (logging.StreamHandler, logging.FileHandler,
                    logging.handlers.RotatingFileHandler)
    for name in (REPORT_LOGGER_NAME, ''):
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            if type(handler) in own_handlers:
                logger.removeHandler(handler)
                handler.close()
    report_logger = logging.getLogger(REPORT_LOGGER_NAME)
    report_logger.propagate = True
    report_logger.setLevel(logging.NOTSET)
    logging.getLogger('mtools').setLevel(logging.NOTSET)
    logging.getLogger().setLevel(logging.WARNING)


class FakeSocket:
    """Records socket calls; selected operations can be made to fail."""

    def __init__(self, family=socket.AF_INET, sock_type=socket.SOCK_DGRAM,
                 granted_buffer: Optional[int] = None, fail_options=(),
                 fail_methods=(), bind_failures: int = 0):
        self.family = family
        self.type = sock_type
        self.granted_buffer = granted_buffer
        self.fail_options = set(fail_options)
        self.fail_methods = set(fail_methods)
        self.bind_failures = bind_failures
        self.calls: List[tuple] = []
        self.options = {}
        self.bound = ('0.0.0.0', 0)
        self.closed = False
        self.accepted: Optional['FakeSocket'] = None

    def _maybe_fail(self, method: str) -> None:
        if method in self.fail_methods:
            raise OSError(errno.EADDRNOTAVAIL, f"{method} refused")

    def setsockopt(self, level, option, value):
        self.calls.append(('setsockopt', level, option, value))
        if option in self.fail_options:
            raise OSError(errno.EINVAL, "Invalid argument")
        self.options[option] = value

    def getsockopt(self, level, option):
        self.calls.append(('getsockopt', level, option))
        if self.granted_buffer is not None:
            return self.granted_buffer
        return self.options.get(option, 212992)

    def bind(self, address):
        self.calls.append(('bind', address))
        if self.bind_failures > 0:
            self.bind_failures -= 1
            raise OSError(errno.EADDRNOTAVAIL, "Cannot assign requested address")
        self._maybe_fail('bind')
        self.bound = address

    def getsockname(self):
        return self.bound

    def listen(self, backlog):
        self.calls.append(('listen', backlog))
        self._maybe_fail('listen')

    def accept(self):
        self.calls.append(('accept',))
        self._maybe_fail('accept')
        self.accepted = FakeSocket(self.family, self.type,
                                   granted_buffer=self.granted_buffer)
        self.accepted.bound = self.bound
        return self.accepted, ('10.0.0.9', 40000)

    def connect(self, address):
        self.calls.append(('connect', address))
        self._maybe_fail('connect')

    def close(self):
        self.closed = True

    def option_calls(self, option):
        return [call for call in self.calls
                if call[0] == 'setsockopt' and call[2] == option]


class FakeSocketFactory:
    """Stand-in for socket.socket that hands out FakeSockets."""

    def __init__(self, **socket_kwargs):
        self.socket_kwargs = socket_kwargs
        self.created: List[FakeSocket] = []

    def __call__(self, family=socket.AF_INET, sock_type=socket.SOCK_DGRAM):
        sock = FakeSocket(family, sock_type, **self.socket_kwargs)
        self.created.append(sock)
        return sock


class FakeSession:
    """In-memory SocketSession: records sends, replays scripted receives."""

    def __init__(self, incoming=(), short_send: int = 0):
        self.sent: List[bytes] = []
        self.incoming = list(incoming)
        self.short_send = short_send
        self.closed = False

    def send(self, data: bytes) -> int:
        self.sent.append(bytes(data))
        return len(data) - self.short_send

    def receive(self) -> Optional[bytes]:
        if not self.incoming:
            return None
        return self.incoming.pop(0)

    def close(self) -> None:
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def socket_factory():
    return FakeSocketFactory()


@pytest.fixture
def sleeper():
    return SleepRecorder()
