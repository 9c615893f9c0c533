"""
mtools - Multicast test tools

A sender (msend) that emits bursts of multicast, unicast UDP or TCP test
traffic, and a receiver (mdump) that dumps it, verifies sequence continuity
and reports loss, with IGMPv3 source filtering on the receive side.
"""

__version__ = "1.0.0"
__author__ = "mtools Authors"
__license__ = "MIT"

from .core.config import Config, ReceiverConfig, SenderConfig
from .core.logger import setup_logging

__all__ = ["Config", "ReceiverConfig", "SenderConfig", "setup_logging"]
