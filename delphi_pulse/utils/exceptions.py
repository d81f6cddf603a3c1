"""Exception types raised by the indexer."""

from __future__ import annotations


class DelphiPulseError(Exception):
    """Base class for indexer errors."""


class TransientRPCError(DelphiPulseError):
    """RPC request kept failing with network, timeout, or rate-limit errors."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class MalformedResponseError(DelphiPulseError):
    """RPC response did not have the expected shape."""


class MalformedEventError(DelphiPulseError):
    """Log could not be decoded into one of the known contract events."""

    def __init__(self, message: str, transaction_hash: str | None = None, log_index: int | None = None) -> None:
        location = f" (tx {transaction_hash}, log {log_index})" if transaction_hash is not None else ""
        super().__init__(f"{message}{location}")
        self.transaction_hash = transaction_hash
        self.log_index = log_index
