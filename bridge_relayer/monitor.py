"""
Confirmation monitor: independently observes the destination chain until
the payout for a source transfer shows up, or the attempt budget runs out.

There is no shared ledger between the chains, so a payout counts as
confirmed only when a destination transaction matches on every axis:
bridge wallet -> recipient, exact expected amount, and a block timestamp
strictly after the source event. Without the timestamp gate an older,
unrelated transfer of the same amount would be taken as confirmation.

Native payouts are found by balance delta + block scan. Token payouts are
found through the token contract's Transfer logs.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from .chain import BlockInfo, TxInfo
from .errors import RpcFatal
from .registry import AssetDescriptor, ChainEndpoint
from .rpc import RpcCaller

logger = structlog.get_logger()


class MonitorState(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"


class MonitorSettings(BaseModel):
    """Polling parameters for confirmation monitors."""

    poll_interval: float = Field(default=2.0, ge=0)
    max_attempts: int = Field(default=120, ge=1)
    scan_batch_size: int = Field(default=5, ge=1)
    batch_delay: float = Field(default=0.5, ge=0)
    log_chunk_size: int = Field(default=5000, ge=0)


@dataclass(frozen=True)
class ScanBaseline:
    """Destination state captured before the payout is submitted."""

    head_height: int
    balance: Optional[int] = None  # native mode only


@dataclass
class PendingConfirmation:
    """Everything a monitor needs to recognise one payout. Owned by that monitor."""

    source_tx_id: str
    amount: str  # source units, as received
    asset: AssetDescriptor
    recipient: str
    source_timestamp: int
    expected_value: int  # destination base units
    last_scanned_height: int
    baseline_balance: Optional[int] = None
    payout_tx_hash: Optional[str] = None
    attempts: int = 0
    state: MonitorState = MonitorState.AWAITING_CONFIRMATION
    confirmed_tx_id: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state is not MonitorState.AWAITING_CONFIRMATION


@dataclass(frozen=True)
class MonitorOutcome:
    source_tx_id: str
    state: MonitorState
    attempts: int
    confirmed_tx_id: Optional[str] = None
    payout_tx_hash: Optional[str] = None


async def capture_baseline(
    endpoint: ChainEndpoint,
    asset: AssetDescriptor,
    recipient: str,
    rpc: RpcCaller,
) -> ScanBaseline:
    """
    Snapshot destination head (and recipient balance for native payouts).

    Must run before the payout is submitted: the executor waits for the
    receipt, so a snapshot taken afterwards would already include the payout.
    """
    head = await rpc.call("get_block_height", endpoint.client.get_block_height)
    balance = None
    if asset.native_on_destination:
        balance = await rpc.call("get_balance", endpoint.client.get_balance, recipient)
    return ScanBaseline(head_height=head, balance=balance)


class ConfirmationMonitor:
    """
    Polling state machine for one PendingConfirmation.

    AWAITING_CONFIRMATION -> CONFIRMED | TIMED_OUT. `tick()` performs one
    observation; `run()` ticks every `poll_interval` until a terminal state.
    """

    def __init__(
        self,
        pending: PendingConfirmation,
        endpoint: ChainEndpoint,
        bridge_wallet: str,
        settings: Optional[MonitorSettings] = None,
        rpc: Optional[RpcCaller] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pending = pending
        self.endpoint = endpoint
        self.bridge_wallet = bridge_wallet
        self.settings = settings or MonitorSettings()
        self.rpc = rpc or RpcCaller()
        self._sleep = sleep
        self.blocks_scanned: list[int] = []

    @property
    def state(self) -> MonitorState:
        return self.pending.state

    def outcome(self) -> MonitorOutcome:
        p = self.pending
        return MonitorOutcome(
            source_tx_id=p.source_tx_id,
            state=p.state,
            attempts=p.attempts,
            confirmed_tx_id=p.confirmed_tx_id,
            payout_tx_hash=p.payout_tx_hash,
        )

    async def run(self) -> MonitorOutcome:
        logger.info(
            "monitor_started",
            source_tx_id=self.pending.source_tx_id,
            symbol=self.pending.asset.symbol,
            recipient=self.pending.recipient,
            expected_value=self.pending.expected_value,
            from_height=self.pending.last_scanned_height + 1,
        )
        while True:
            state = await self.tick()
            if state is not MonitorState.AWAITING_CONFIRMATION:
                return self.outcome()
            await self._sleep(self.settings.poll_interval)

    async def tick(self) -> MonitorState:
        p = self.pending
        if p.terminal:
            return p.state

        if p.attempts >= self.settings.max_attempts:
            return self._time_out()

        p.attempts += 1
        try:
            head = await self.rpc.call("get_block_height", self.endpoint.client.get_block_height)
            logger.debug(
                "monitor_tick",
                source_tx_id=p.source_tx_id,
                attempt=p.attempts,
                head=head,
                last_scanned=p.last_scanned_height,
            )
            if p.asset.native_on_destination:
                match = await self._check_native(head)
            else:
                match = await self._check_token(head)
        except RpcFatal as e:
            logger.warning(
                "monitor_tick_error",
                source_tx_id=p.source_tx_id,
                attempt=p.attempts,
                error=str(e),
            )
            match = None

        if match is not None:
            p.state = MonitorState.CONFIRMED
            p.confirmed_tx_id = match
            logger.info(
                "payout_confirmed",
                source_tx_id=p.source_tx_id,
                destination_tx_id=match,
                attempts=p.attempts,
            )
            return p.state

        if p.attempts >= self.settings.max_attempts:
            return self._time_out()
        return p.state

    def _time_out(self) -> MonitorState:
        p = self.pending
        p.state = MonitorState.TIMED_OUT
        logger.warning(
            "monitor_timeout",
            source_tx_id=p.source_tx_id,
            payout_tx_hash=p.payout_tx_hash,
            attempts=p.attempts,
            message="payout not observed on destination; check explorer manually",
        )
        return p.state

    def _advance(self, height: int) -> None:
        if height > self.pending.last_scanned_height:
            self.pending.last_scanned_height = height

    async def _check_native(self, head: int) -> Optional[str]:
        p = self.pending
        balance = await self.rpc.call("get_balance", self.endpoint.client.get_balance, p.recipient)
        if balance == p.baseline_balance:
            return None

        for height in range(p.last_scanned_height + 1, head + 1):
            block: BlockInfo = await self.rpc.call("get_block", self.endpoint.client.get_block, height)
            self.blocks_scanned.append(height)
            if block.timestamp > p.source_timestamp and block.tx_refs:
                match = await self._match_block_txs(block)
                if match is not None:
                    self._advance(head)
                    return match
            self._advance(height)

        self._advance(head)
        return None

    async def _match_block_txs(self, block: BlockInfo) -> Optional[str]:
        size = self.settings.scan_batch_size
        refs = block.tx_refs
        for start in range(0, len(refs), size):
            batch = refs[start:start + size]
            txs = await asyncio.gather(
                *(self.rpc.call("get_transaction", self.endpoint.client.get_transaction, ref) for ref in batch)
            )
            for tx in txs:
                if self._is_native_match(tx):
                    return tx.tx_id
            if start + size < len(refs) and self.settings.batch_delay:
                await self._sleep(self.settings.batch_delay)
        return None

    def _is_native_match(self, tx: Optional[TxInfo]) -> bool:
        if tx is None or tx.to_address is None:
            return False
        p = self.pending
        return (
            tx.to_address.lower() == p.recipient.lower()
            and tx.from_address.lower() == self.bridge_wallet.lower()
            and tx.value > 0
            and tx.value == p.expected_value
        )

    async def _check_token(self, head: int) -> Optional[str]:
        p = self.pending
        contract = p.asset.destination_address
        from_height = max(p.last_scanned_height + 1, head - self.settings.log_chunk_size)
        if from_height > head:
            return None

        logs = await self.rpc.call(
            "query_transfer_logs",
            self.endpoint.client.query_transfer_logs,
            contract,
            self.bridge_wallet,
            p.recipient,
            from_height,
            head,
        )
        self.blocks_scanned.extend(range(from_height, head + 1))

        timestamps: dict[int, int] = {}
        match = None
        for log in sorted(logs, key=lambda entry: entry.block_height):
            if log.value != p.expected_value:
                continue
            if log.block_height not in timestamps:
                block = await self.rpc.call("get_block", self.endpoint.client.get_block, log.block_height)
                timestamps[log.block_height] = block.timestamp
            if timestamps[log.block_height] > p.source_timestamp:
                match = log.tx_id
                break

        self._advance(head)
        return match
