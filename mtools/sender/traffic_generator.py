"""
Traffic generator for msend.
Sends an echo announcement, bursts of sequenced data messages and an
optional closing stat message.
"""

import logging
import time
from typing import Callable

import click

from ..core.config import MAX_MESSAGE_SIZE, FillMode, SenderConfig
from ..core.logger import get_report_logger
from ..protocol.messages import encode_echo, encode_stat, format_data_text
from ..transport.membership import SocketSession

# Time for the network to establish multicast forwarding state
SETTLE_SECONDS = 1


class TrafficGenerator:
    """Drives one sender socket through the configured test loops."""

    def __init__(self, config: SenderConfig, session: SocketSession,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.session = session
        self.logger = logging.getLogger(__name__)
        self.report = get_report_logger()
        self._sleep = sleep

        # Reused for every data message; see FillMode
        self._buffer = bytearray(MAX_MESSAGE_SIZE)
        if config.payload is not None:
            self._buffer[:len(config.payload)] = config.payload

        self.messages_sent = 0
        self.bursts_sent = 0

    def run(self) -> int:
        """Run all test loops and return the count sent by the last one."""
        for loop in range(max(self.config.loops, 1)):
            self.logger.debug(f"Starting test loop {loop + 1}")
            self._run_loop()
        return self.messages_sent

    def announcement(self) -> str:
        """Text of the echo message that opens every loop."""
        if self.config.test_num is not None:
            return f"test {self.config.test_num}, sender equiv cmd {self.config.equivalent_command()}"
        return f"sender equiv cmd: {self.config.equivalent_command()}"

    def build_message(self, ordinal: int) -> bytes:
        """Data message for an ordinal under the configured content policy."""
        cfg = self.config

        if cfg.payload is not None:
            return bytes(self._buffer[:cfg.msg_len])

        text = format_data_text(ordinal, cfg.decimal)
        if cfg.msg_len == 0:
            return text

        if cfg.fill_mode == FillMode.ZERO:
            self._buffer[:cfg.msg_len] = bytes(cfg.msg_len)
        # Text plus its terminating NUL, later bytes stay as they were
        self._buffer[:len(text) + 1] = text + b'\0'
        return bytes(self._buffer[:cfg.msg_len])

    def _run_loop(self) -> None:
        cfg = self.config

        if cfg.num_bursts != 0 and cfg.quiet < 2:
            if cfg.msg_len == 0:
                self.report.info(f"Sending {cfg.num_bursts} bursts of {cfg.burst_count} "
                                 f"variable-length messages")
            else:
                self.report.info(f"Sending {cfg.num_bursts} bursts of {cfg.burst_count} "
                                 f"{cfg.msg_len}-byte messages")

        # Echo resets the counters on both ends
        self._send_checked(encode_echo(self.announcement()))
        self._sleep(SETTLE_SECONDS)

        self.messages_sent = 0
        self.bursts_sent = 0
        while cfg.num_bursts == 0 or self.bursts_sent < cfg.num_bursts:
            if cfg.pause_ms > 0 and self.messages_sent > 0:
                self._sleep(cfg.pause_ms / 1000.0)
            self._send_burst()
            self.bursts_sent += 1

        if cfg.stat_pause_ms > 0:
            if cfg.quiet < 2:
                self.report.info("Pausing before sending 'stat'")
            self._sleep(cfg.stat_pause_ms / 1000.0)
            if cfg.quiet < 2:
                self.report.info("Sending stat")
            self._send_checked(encode_stat(self.messages_sent))
            if cfg.quiet < 2:
                self.report.info(f"{self.messages_sent} messages sent (not including 'stat')")
        elif cfg.quiet < 2:
            self.report.info(f"{self.messages_sent} messages sent")

    def _send_burst(self) -> None:
        cfg = self.config

        for i in range(cfg.burst_count):
            message = self.build_message(self.messages_sent)

            if i == 0:
                if cfg.quiet == 0:
                    if cfg.burst_count == 1:
                        self.report.info(f"Sending {len(message)} bytes")
                    else:
                        self.report.info(f"Sending burst of {cfg.burst_count} msgs")
                elif cfg.quiet == 1:
                    click.echo('.', nl=False)

            self._send_checked(message)
            self.messages_sent += 1

    def _send_checked(self, data: bytes) -> int:
        sent = self.session.send(data)
        if sent != len(data):
            self.report.warning(f"WARNING: send returned {sent}, expected {len(data)}")
        return sent
