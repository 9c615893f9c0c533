"""
Receive loop for mdump.
Dumps every message, applies echo/stat control messages, verifies data
sequence numbers and reports loss when the sender's stat arrives.
"""

import logging
import time
from datetime import datetime
from typing import BinaryIO, Callable, Optional

from ..core.config import ReceiverConfig
from ..core.dump import format_dump, format_time
from ..core.errors import StatisticsError
from ..core.logger import get_report_logger
from ..protocol.messages import Message, MessageKind, classify
from ..protocol.stats import LossReport, SequenceVerifier, TrafficStatistics
from ..reporting.loss_publisher import LossPublisher
from ..transport.membership import SocketSession


class VerificationLoop:
    """Consumes one message per iteration until end of stream or stop-on-stat."""

    def __init__(self, config: ReceiverConfig, session: SocketSession,
                 sleep: Callable[[float], None] = time.sleep,
                 publisher: Optional[LossPublisher] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.config = config
        self.session = session
        self.publisher = publisher
        self.logger = logging.getLogger(__name__)
        self.report = get_report_logger()
        self._sleep = sleep
        self._clock = clock
        self._dump_file: Optional[BinaryIO] = None

        self.statistics = TrafficStatistics()
        self.sequence = SequenceVerifier()
        self.mismatch_count = 0
        self.last_report: Optional[LossReport] = None

    def run(self) -> Optional[LossReport]:
        """Receive until the stream ends or a stat stops the loop.

        Returns the last loss report computed, if any.
        """
        if self.config.dump_path is not None:
            self._dump_file = open(self.config.dump_path, 'wb')

        try:
            while True:
                data = self.session.receive()
                if data is None:
                    self.report.info("EOF")
                    break
                if not self.process(data):
                    break
        finally:
            if self._dump_file is not None:
                self._dump_file.close()
                self._dump_file = None

        return self.last_report

    def process(self, data: bytes) -> bool:
        """Handle one received message. Returns False when the loop should stop."""
        self._show(data)

        message = classify(data)
        if message.kind == MessageKind.ECHO:
            self.report.info(message.echo_text)
            self.reset()
            return True

        if message.kind == MessageKind.STAT:
            return self._handle_stat(message)

        self._handle_data(message)
        return True

    def reset(self) -> None:
        self.statistics.reset()
        self.sequence.reset()

    def _show(self, data: bytes) -> None:
        quiet = self.config.quiet_level
        if quiet < 2:
            endpoint = self.config.endpoint
            header = (f"{format_time(self._clock())} {endpoint.address}.{endpoint.port} "
                      f"{len(data)} bytes")
            if quiet == 0:
                self.report.info(header + ":")
                for line in format_dump(data):
                    self.report.info(line)
            else:
                self.report.info(header)

        if self._dump_file is not None:
            self._dump_file.write(data)

    def _handle_stat(self, message: Message) -> bool:
        sent = message.stat_count
        received = self.statistics.count
        self.report.info(f"{sent} msgs sent, {received} received (not including 'stat')")

        try:
            loss = self.statistics.loss_against(sent)
        except StatisticsError as e:
            self.report.error(f"ERROR: {e}")
        else:
            self.report.info(f"{loss.loss_percent:f}% loss")
            self.last_report = loss
            if self.publisher is not None:
                self.publisher.publish(loss, self.config.endpoint)

        if self.config.stop_on_stat:
            return False

        self.reset()
        return True

    def _handle_data(self, message: Message) -> None:
        cfg = self.config
        if cfg.pause_ms > 0 and (cfg.pause_count == 0
                                 or self.statistics.count < cfg.pause_count):
            self._sleep(cfg.pause_ms / 1000.0)

        if cfg.verify:
            mismatch = self.sequence.check(message.raw)
            if mismatch is not None:
                self.mismatch_count += 1
                self.report.info(str(mismatch))
        else:
            self.sequence.advance()

        self.statistics.record()
