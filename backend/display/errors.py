"""Display error types."""

from __future__ import annotations


class DisplayUnavailable(Exception):
    """
    A rendering call failed.

    Raised from primary show operations (the caller asked for something to
    appear right now). Swallowed and logged for the dashboard and for
    queued jobs that start in the background.
    """

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"{operation} failed: {cause!r}")
        self.operation = operation
        self.cause = cause
