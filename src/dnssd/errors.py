"""Exception hierarchy shared by the dnssd package.

Brief:
  Only setup failures and cancellation cross the boundary of a browse
  operation; both derive from DnssdError so callers can catch the whole
  family with a single except clause.
"""

from __future__ import annotations

from typing import Optional


class DnssdError(Exception):
    """Brief: Base class for all dnssd errors."""


class ConnectionOpenError(DnssdError):
    """Brief: Raised when no mDNS multicast socket could be bound.

    Inputs:
      - message: description of the failure.

    Outputs:
      - Exception instance; the underlying OSError is chained as __cause__.
    """


class SendError(DnssdError, OSError):
    """Brief: Raised when a query cannot be transmitted on its interface."""


class ContextError(DnssdError):
    """Brief: Terminal error of a cancelled operation.

    Inputs:
      - message: Human readable reason.
      - cause: Optional object (often an exception or string) supplied by
        whoever cancelled the context.

    Outputs:
      - Exception instance exposing ``cause``.
    """

    default_message = "context done"

    def __init__(self, message: Optional[str] = None, cause: object = None) -> None:
        super().__init__(message or self.default_message)
        self.cause = cause


class Cancelled(ContextError):
    """Brief: The context was cancelled explicitly."""

    default_message = "context canceled"


class DeadlineExceeded(ContextError):
    """Brief: The context deadline passed before the operation stopped."""

    default_message = "context deadline exceeded"
