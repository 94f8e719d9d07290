"""
Errors raised by rank_gather collectives.

Precondition violations (such as the root calling a send-only gather) are
plain AssertionErrors. Everything else derives from GatherError so callers
can abort a collective with a single except clause.
"""

from typing import Optional


class GatherError(Exception):
    """Base class for failures during a gather call."""


class TransportError(GatherError):
    """
    An exchange primitive of the process group failed.

    Attributes:
        operation: Name of the transport operation that failed
        status: Status reported by the backend, usually its exception type name
    """

    def __init__(self, operation: str, status: Optional[str] = None, detail: str = ""):
        self.operation = operation
        self.status = status
        message = f"Transport operation '{operation}' failed"
        if status is not None:
            message += f" with status {status}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class EncodingError(GatherError):
    """A local value could not be converted for transmission."""


class DecodingError(GatherError):
    """A received byte region could not be turned back into values."""
