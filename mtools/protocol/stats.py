"""
Sequence verification and loss accounting.
"""

from dataclasses import dataclass
from typing import Optional

from ..core.errors import StatisticsError
from .messages import parse_sequence, sequence_text


@dataclass(frozen=True)
class SequenceMismatch:
    """Expected ordinal differed from the one carried by a data message."""
    expected: int
    received: int
    received_text: str

    def __str__(self) -> str:
        return f"Expected seq {self.expected:x} (hex), got {self.received_text}"


@dataclass(frozen=True)
class LossReport:
    sent: int
    received: int
    loss_percent: float


def compute_loss(sent: int, received: int) -> LossReport:
    """Loss as a percentage of the messages the sender reports.

    A zero sent count has no defined loss and raises StatisticsError.
    """
    if sent == 0:
        raise StatisticsError(
            f"'stat' reported 0 msgs sent ({received} received), loss is undefined"
        )
    return LossReport(
        sent=sent,
        received=received,
        loss_percent=(sent - received) * 100.0 / sent
    )


class SequenceVerifier:
    """Tracks the next expected ordinal and resynchronizes on mismatch.

    A mismatch never rejects the message: the counter adopts the received
    ordinal, so one gap produces one report and verification carries on.
    """

    def __init__(self):
        self.expected = 0

    def reset(self) -> None:
        self.expected = 0

    def check(self, data: bytes) -> Optional[SequenceMismatch]:
        received = parse_sequence(data)
        mismatch = None
        if received != self.expected:
            mismatch = SequenceMismatch(self.expected, received, sequence_text(data))
            self.expected = received
        self.expected += 1
        return mismatch

    def advance(self) -> None:
        """Count a data message without inspecting it."""
        self.expected += 1


class TrafficStatistics:
    """Counter of data messages, reset by each echo and stat."""

    def __init__(self):
        self.count = 0

    def reset(self) -> None:
        self.count = 0

    def record(self) -> int:
        self.count += 1
        return self.count

    def loss_against(self, sent: int) -> LossReport:
        return compute_loss(sent, self.count)
