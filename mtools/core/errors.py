"""
Exception hierarchy for mtools.
"""


class MToolsError(Exception):
    """Base class for all mtools errors."""


class ConfigurationError(MToolsError, ValueError):
    """Invalid or inconsistent settings, detected before any socket is touched."""


class TransportError(MToolsError):
    """Socket setup or runtime failure. Always fatal."""

    def __init__(self, operation: str, error: OSError):
        self.operation = operation
        self.error = error
        super().__init__(f"{operation}: {error.strerror or error}")


class StatisticsError(MToolsError, ArithmeticError):
    """Loss cannot be computed from the counters received."""
