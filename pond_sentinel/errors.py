"""Error taxonomy for the pond monitoring core.

ValidationError and NotFoundError are raised to the caller of a mutator.
TransientIOError is raised by document store back ends; evaluator drivers
catch and log it so a single bad tick never reaches the host loop.
"""

from __future__ import annotations


class PondSentinelError(Exception):
    """Base class for all pond_sentinel errors."""


class ValidationError(PondSentinelError):
    """Out-of-range or otherwise rejected input.

    Raised synchronously at the write boundary. Values are never clamped
    silently when they are written.
    """

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(PondSentinelError):
    """The pond, log entry or document does not exist."""


class TransientIOError(PondSentinelError):
    """The backing store could not be reached or rejected the request."""
