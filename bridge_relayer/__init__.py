"""
Bridge Relayer

Relays token transfers received by the bridge wallet on Arbitrum to a
payout on BitLayer, then confirms the payout by watching BitLayer.

WBTC is paid out as native BTC (18 decimals); USDT is paid out through the
BitLayer USDT contract.

Usage:
    # Dispatch a webhook payload and wait for confirmations
    bridge-relayer dispatch payload.json

    # Translate an amount between precisions
    bridge-relayer translate 0.005 8 18
"""

__version__ = "0.1.0"

from .amounts import translate
from .config import BridgeConfig, Settings
from .dispatcher import DispatchReport, NotificationDispatcher
from .executor import PayoutExecutor, PayoutResult
from .guard import IdempotencyGuard
from .models import InboundTransferEvent, NotificationBatch
from .monitor import ConfirmationMonitor, MonitorState, PendingConfirmation
from .registry import AssetDescriptor, ChainEndpoint, Registry

__all__ = [
    "__version__",
    "translate",
    "BridgeConfig",
    "Settings",
    "DispatchReport",
    "NotificationDispatcher",
    "PayoutExecutor",
    "PayoutResult",
    "IdempotencyGuard",
    "InboundTransferEvent",
    "NotificationBatch",
    "ConfirmationMonitor",
    "MonitorState",
    "PendingConfirmation",
    "AssetDescriptor",
    "ChainEndpoint",
    "Registry",
]
