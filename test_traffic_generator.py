"""
Tests for the msend traffic generator.
"""

import logging

import pytest

from conftest import FakeSession, SleepRecorder
from mtools.core.config import FillMode, SenderConfig
from mtools.protocol.messages import MessageKind, classify, parse_sequence
from mtools.sender.traffic_generator import SETTLE_SECONDS, TrafficGenerator

GROUP = '239.101.3.1'
PORT = 12965


def make_generator(session=None, sleep=None, **kwargs):
    config = SenderConfig.create(GROUP, PORT, **kwargs)
    return TrafficGenerator(config, session or FakeSession(), sleep=sleep or SleepRecorder())


@pytest.fixture
def report_caplog(caplog):
    caplog.set_level(logging.INFO, logger='mtools.report')
    return caplog


class TestSessionShape:

    def test_bursts_and_stat(self, sleeper):
        session = FakeSession()
        generator = make_generator(session, sleeper, burst_count=3, num_bursts=2,
                                   pause_ms=100, stat_pause_ms=100)

        assert generator.run() == 6

        kinds = [classify(m).kind for m in session.sent]
        assert kinds == [MessageKind.ECHO] + [MessageKind.DATA] * 6 + [MessageKind.STAT]
        assert [parse_sequence(m) for m in session.sent[1:7]] == list(range(6))
        assert session.sent[-1] == b'stat 6'
        # settle, pause between the two bursts, pause before stat
        assert sleeper.calls == [SETTLE_SECONDS, 0.1, 0.1]

    def test_no_stat_without_stat_pause(self, sleeper, report_caplog):
        session = FakeSession()
        generator = make_generator(session, sleeper, num_bursts=3, pause_ms=100)

        generator.run()

        assert not any(classify(m).kind == MessageKind.STAT for m in session.sent)
        assert len(session.sent) == 4
        assert "3 messages sent" in report_caplog.messages

    def test_echo_carries_equivalent_command(self):
        session = FakeSession()
        generator = make_generator(session, num_bursts=1)

        generator.run()

        echo = classify(session.sent[0])
        assert echo.kind == MessageKind.ECHO
        assert echo.echo_text == f"echo sender equiv cmd: {generator.config.equivalent_command()}"
        assert session.sent[0].endswith(b'\0')

    def test_preset_announcement(self):
        generator = make_generator(preset=2)
        assert generator.announcement().startswith("test 2, sender equiv cmd msend -b1 -m5000")

    def test_loops_repeat_the_session(self, sleeper):
        session = FakeSession()
        generator = make_generator(session, sleeper, num_bursts=2, pause_ms=100,
                                   stat_pause_ms=50, loops=2)

        assert generator.run() == 2

        kinds = [classify(m).kind for m in session.sent]
        assert kinds.count(MessageKind.ECHO) == 2
        assert kinds.count(MessageKind.STAT) == 2
        assert [m for m in session.sent if m.startswith(b'stat ')] == [b'stat 2', b'stat 2']

    def test_progress_lines(self, report_caplog):
        generator = make_generator(burst_count=2, num_bursts=1, stat_pause_ms=10)

        generator.run()

        assert report_caplog.messages == [
            "Sending 1 bursts of 2 variable-length messages",
            "Sending burst of 2 msgs",
            "Pausing before sending 'stat'",
            "Sending stat",
            "2 messages sent (not including 'stat')",
        ]

    def test_silent_at_quiet_two(self, report_caplog):
        generator = make_generator(num_bursts=2, pause_ms=100, stat_pause_ms=10, quiet=2)

        generator.run()

        assert report_caplog.messages == []

    def test_short_send_is_reported(self, report_caplog):
        session = FakeSession(short_send=1)
        generator = make_generator(session, num_bursts=1)

        assert generator.run() == 1
        assert any(m.startswith("WARNING: send returned") for m in report_caplog.messages)


class TestMessageContent:

    def test_variable_length_hex(self):
        generator = make_generator(num_bursts=1)
        assert generator.build_message(26) == b'Message 1a'

    def test_variable_length_decimal(self):
        generator = make_generator(num_bursts=1, decimal=True)
        assert generator.build_message(26) == b'Message 26'

    def test_fixed_length(self):
        generator = make_generator(num_bursts=1, msg_len=20)
        message = generator.build_message(3)
        assert len(message) == 20
        assert message[:10] == b'Message 3\0'
        assert parse_sequence(message) == 3

    def test_fixed_length_shorter_than_text(self):
        generator = make_generator(num_bursts=1, msg_len=4)
        assert generator.build_message(0) == b'Mess'

    def test_stale_fill_keeps_earlier_bytes(self):
        generator = make_generator(num_bursts=1, msg_len=16)
        generator._buffer[:16] = b'x' * 16
        message = generator.build_message(1)
        assert message == b'Message 1\0' + b'x' * 6

    def test_longer_text_leaves_residue_for_shorter(self):
        generator = make_generator(num_bursts=1, msg_len=16)
        generator.build_message(0x100)
        assert generator.build_message(1) == b'Message 1\x000\x00' + bytes(4)

    def test_zero_fill_clears_tail(self):
        generator = make_generator(num_bursts=1, msg_len=16, fill_mode=FillMode.ZERO)
        generator._buffer[:16] = b'x' * 16
        assert generator.build_message(1) == b'Message 1' + bytes(7)

    def test_payload_is_sent_verbatim(self):
        session = FakeSession()
        generator = make_generator(session, num_bursts=1, burst_count=2,
                                   payload_hex='0102abcd')

        generator.run()

        assert session.sent[1:3] == [b'\x01\x02\xab\xcd', b'\x01\x02\xab\xcd']
