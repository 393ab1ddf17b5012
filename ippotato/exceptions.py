"""
exceptions.py

Responsibility: Defines the exception classes raised by the server lifecycle.
Does NOT: contain logging, HTTP handling or process exit logic.
"""

from __future__ import annotations


class IPPotatoError(Exception):
    """Base class for all ip-potato errors."""


class ListenError(IPPotatoError):
    """
    Raised when the listen address cannot be parsed or bound.

    Fatal: the service never started accepting connections and the
    failure is not retried.
    """


class ServeError(IPPotatoError):
    """
    Raised when the serve loop stops without having been asked to.

    The underlying exception, if there was one, is chained as __cause__.
    """


class ShutdownTimeoutError(IPPotatoError):
    """
    Raised when in-flight requests did not finish within the graceful
    shutdown window and the remaining connections had to be force-closed.

    The service did shut down, so callers usually log this and exit normally.
    """

    def __init__(self, timeout: float, remaining: int) -> None:
        self.timeout = timeout
        self.remaining = remaining
        super().__init__(
            f"graceful shutdown exceeded {timeout}s, "
            f"force-closed {remaining} connection(s)"
        )
