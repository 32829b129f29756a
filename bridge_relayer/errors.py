"""
Error taxonomy for the bridge relayer.
"""

from enum import Enum
from typing import Optional


class BridgeError(Exception):
    """Base class for all relayer errors."""


class InvalidAmount(BridgeError, ValueError):
    """Amount is not a well-formed non-negative decimal for its precision."""

    def __init__(self, amount: object, reason: str = "malformed decimal"):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class Unresolved(BridgeError, LookupError):
    """No registered asset, wallet or chain matches the lookup key."""


class ExecutionErrorKind(str, Enum):
    SUBMISSION_FAILED = "submission_failed"
    REVERTED = "reverted"
    UNCONFIGURED = "unconfigured"


class ExecutionError(BridgeError):
    """Destination payout was not achieved."""

    def __init__(self, kind: ExecutionErrorKind, message: str, tx_hash: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.tx_hash = tx_hash
        super().__init__(f"{kind.value}: {message}")


class RpcError(BridgeError):
    """Error from a chain RPC call."""


class RpcTransient(RpcError):
    """Rate-limited call. Only ever raised and handled inside the retry wrapper."""


class RpcFatal(RpcError):
    """Non-retryable RPC failure, or a rate limit that outlasted the retry budget."""

    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        super().__init__(f"RPC {operation} failed: {cause}")
