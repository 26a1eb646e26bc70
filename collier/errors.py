"""Collier exceptions."""


class CollierError(Exception):
    """Base exception for collier errors."""
    pass


class SourceError(CollierError):
    """Raised when the remote account source fails."""
    pass


class TransientSourceError(SourceError):
    """Timeouts, rate limits and transient network faults. Safe to retry."""
    pass


class NonTransientSourceError(SourceError):
    """Malformed request or endpoint rejection. Aborts the run."""
    pass


class InvalidParamsError(NonTransientSourceError):
    """The endpoint rejected the parameters of one request, e.g. an unknown mint."""
    pass


class DecodeError(CollierError):
    """Raised when account bytes cannot be decoded into a record."""
    pass


class MalformedRecord(DecodeError):
    """Record is shorter than its header or carries invalid values."""
    pass


class TruncatedRecord(DecodeError):
    """A declared length reads past the end of the buffer."""
    pass


class StoreWriteError(CollierError):
    """Raised when the relational store rejects a write."""
    pass


class MiningAborted(CollierError):
    """Raised when a mining run stops on a run-level failure."""

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(message)
        self.cause = cause
