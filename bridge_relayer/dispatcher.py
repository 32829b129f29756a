"""
Main relay logic - filters inbound notifications, pays out on the
destination chain, and starts a confirmation monitor per payout.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from .amounts import to_base_units
from .config import BridgeConfig
from .errors import ExecutionError, ExecutionErrorKind, InvalidAmount, RpcFatal, Unresolved
from .executor import PayoutExecutor, PayoutResult
from .guard import IdempotencyGuard
from .models import InboundTransferEvent, NotificationBatch
from .monitor import (
    ConfirmationMonitor,
    MonitorOutcome,
    MonitorSettings,
    MonitorState,
    PendingConfirmation,
    capture_baseline,
)
from .registry import AssetDescriptor, ChainEndpoint, Registry
from .rpc import RpcCaller

logger = structlog.get_logger()

# Lower bound used when the source block time cannot be looked up: the
# event happened before we received it, minus some clock skew.
SOURCE_TIME_SKEW_SECONDS = 30


class DispatchStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    WRONG_RECIPIENT = "wrong_recipient"
    UNRESOLVED = "unresolved"
    INVALID_AMOUNT = "invalid_amount"
    FAILED = "failed"


@dataclass
class DispatchResult:
    """What happened to one event of a batch."""

    source_tx_id: str
    status: DispatchStatus
    payout: Optional[PayoutResult] = None
    error: Optional[str] = None


@dataclass
class DispatchReport:
    """Acknowledgment for one batch: every event dispatched, not necessarily confirmed."""

    batch_id: str
    delivery_id: str
    results: list[DispatchResult] = field(default_factory=list)

    def with_status(self, status: DispatchStatus) -> list[DispatchResult]:
        return [r for r in self.results if r.status is status]

    @property
    def accepted(self) -> list[DispatchResult]:
        return self.with_status(DispatchStatus.ACCEPTED)

    @property
    def failed(self) -> list[DispatchResult]:
        return self.with_status(DispatchStatus.FAILED)


@dataclass
class DispatcherState:
    """Running counters."""

    batches_dispatched: int = 0
    last_batch_time: Optional[datetime] = None
    payouts_submitted: int = 0
    payouts_failed: int = 0
    confirmed: int = 0
    timed_out: int = 0


class NotificationDispatcher:
    """
    Drives Guard -> Executor -> Monitor for every inbound transfer.

    Events of one batch are handled strictly in order: the payout for item N
    is done (or failed) before item N+1 starts. Separate batches may be
    dispatched concurrently; the guard is what keeps them from paying the
    same source transaction twice.
    """

    def __init__(
        self,
        bridge_wallet: str,
        registry: Registry,
        guard: IdempotencyGuard,
        executor: PayoutExecutor,
        destination_chain: str,
        source_chain: Optional[str] = None,
        monitor_settings: Optional[MonitorSettings] = None,
        rpc: Optional[RpcCaller] = None,
        on_outcome: Optional[Callable[[MonitorOutcome], None]] = None,
    ):
        self.bridge_wallet = bridge_wallet
        self.registry = registry
        self.guard = guard
        self.executor = executor
        self.destination: ChainEndpoint = registry.endpoint_for(destination_chain)
        self.source: Optional[ChainEndpoint] = None
        if source_chain:
            try:
                self.source = registry.endpoint_for(source_chain)
            except Unresolved:
                logger.warning("source_endpoint_missing", chain=source_chain)
        self.monitor_settings = monitor_settings or MonitorSettings()
        self.rpc = rpc or executor.rpc
        self.on_outcome = on_outcome
        self.state = DispatcherState()
        self.outcomes: list[MonitorOutcome] = []
        self._monitor_tasks: set[asyncio.Task] = set()

        logger.info(
            "dispatcher_initialized",
            bridge_wallet=bridge_wallet,
            destination=self.destination.chain,
            source=self.source.chain if self.source else None,
            assets=[a.symbol for a in registry.assets],
        )

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        registry: Optional[Registry] = None,
        on_outcome: Optional[Callable[[MonitorOutcome], None]] = None,
    ) -> "NotificationDispatcher":
        """Wire guard, executor and registry from configuration."""
        settings = config.settings
        rpc = RpcCaller(config.retry_policy())
        executor = PayoutExecutor(
            fee=config.fee_params(native=True),
            token_fee=config.fee_params(native=False),
            rpc=rpc,
        )
        return cls(
            bridge_wallet=settings.bridge_wallet_address,
            registry=registry or config.build_registry(),
            guard=IdempotencyGuard(expiry_seconds=settings.guard_expiry_seconds),
            executor=executor,
            destination_chain=settings.destination_chain,
            source_chain=settings.source_chain,
            monitor_settings=config.monitor_settings(),
            rpc=rpc,
            on_outcome=on_outcome,
        )

    @property
    def payout_wallet(self) -> str:
        """Address payouts are sent from on the destination chain."""
        if self.destination.signer is not None:
            return self.destination.signer.address
        return self.bridge_wallet

    @property
    def in_flight(self) -> int:
        return len(self._monitor_tasks)

    async def dispatch(self, batch: NotificationBatch) -> DispatchReport:
        """Dispatch every event of `batch` in order."""
        logger.info(
            "batch_received",
            batch_id=batch.batch_id,
            delivery_id=batch.delivery_id,
            network=batch.source_network,
            event_count=len(batch.events),
        )

        report = DispatchReport(batch_id=batch.batch_id, delivery_id=batch.delivery_id)
        for event in batch.events:
            report.results.append(await self._dispatch_event(event))

        self.state.batches_dispatched += 1
        self.state.last_batch_time = datetime.now()
        logger.info(
            "batch_dispatched",
            batch_id=batch.batch_id,
            accepted=len(report.accepted),
            failed=len(report.failed),
            monitors_in_flight=self.in_flight,
        )
        return report

    async def _dispatch_event(self, event: InboundTransferEvent) -> DispatchResult:
        tx_id = event.source_tx_id

        if self.guard.is_claimed(tx_id):
            logger.info("skipping_processed_transaction", source_tx_id=tx_id)
            return DispatchResult(tx_id, DispatchStatus.DUPLICATE)

        if event.to_address.lower() != self.bridge_wallet.lower():
            logger.debug(
                "skipping_wrong_recipient",
                source_tx_id=tx_id,
                received=event.to_address,
                expected=self.bridge_wallet,
            )
            return DispatchResult(tx_id, DispatchStatus.WRONG_RECIPIENT)

        asset = self.registry.resolve_asset(event.asset_key)
        if asset is None:
            logger.debug(
                "skipping_unregistered_asset",
                source_tx_id=tx_id,
                category=event.category,
                asset=event.asset_hint,
                contract=event.asset_key,
            )
            return DispatchResult(tx_id, DispatchStatus.UNRESOLVED)

        try:
            expected_value = self._expected_value(event, asset)
        except InvalidAmount as e:
            logger.warning("rejecting_invalid_amount", source_tx_id=tx_id, amount=event.amount, error=str(e))
            return DispatchResult(tx_id, DispatchStatus.INVALID_AMOUNT, error=str(e))

        if not self.guard.claim(tx_id):
            logger.info("skipping_processed_transaction", source_tx_id=tx_id)
            return DispatchResult(tx_id, DispatchStatus.DUPLICATE)

        logger.info(
            "processing_transfer",
            source_tx_id=tx_id,
            sender=event.from_address,
            amount=event.amount,
            symbol=asset.symbol,
            mode=asset.mode,
        )

        try:
            baseline = await capture_baseline(self.destination, asset, event.from_address, self.rpc)
        except RpcFatal as e:
            self.guard.release(tx_id)
            self.state.payouts_failed += 1
            logger.error("baseline_capture_failed", source_tx_id=tx_id, error=str(e))
            error = ExecutionError(ExecutionErrorKind.SUBMISSION_FAILED, str(e))
            return DispatchResult(
                tx_id,
                DispatchStatus.FAILED,
                payout=PayoutResult(success=False, error=error),
                error=str(error),
            )

        source_timestamp = await self._source_timestamp(event)

        payout = await self.executor.execute(event, asset, self.destination)
        if not payout.success:
            self.guard.release(tx_id)
            self.state.payouts_failed += 1
            logger.error(
                "payout_failed_claim_released",
                source_tx_id=tx_id,
                kind=payout.error.kind.value if payout.error else None,
                error=str(payout.error),
            )
            return DispatchResult(tx_id, DispatchStatus.FAILED, payout=payout, error=str(payout.error))

        self.state.payouts_submitted += 1
        pending = PendingConfirmation(
            source_tx_id=tx_id,
            amount=event.amount,
            asset=asset,
            recipient=event.from_address,
            source_timestamp=source_timestamp,
            expected_value=expected_value,
            last_scanned_height=baseline.head_height,
            baseline_balance=baseline.balance,
            payout_tx_hash=payout.tx_hash,
        )
        self._start_monitor(pending)
        return DispatchResult(tx_id, DispatchStatus.ACCEPTED, payout=payout)

    @staticmethod
    def _expected_value(event: InboundTransferEvent, asset: AssetDescriptor) -> int:
        """
        Destination base units owed for `event`.

        The decimal `value` is checked against the exact `rawValue` when the
        notification carries one in the registered precision. Zero-value
        transfers are rejected so they never cost destination gas.
        """
        source_units = to_base_units(event.amount, asset.source_decimals)

        meta = event.contract_meta
        if meta is not None and meta.raw_value:
            if meta.decimals is not None and meta.decimals != asset.source_decimals:
                raise InvalidAmount(
                    event.amount,
                    f"notification reports {meta.decimals} decimals, {asset.symbol} has {asset.source_decimals}",
                )
            raw_units = meta.raw_integer_value()
            if raw_units != source_units:
                raise InvalidAmount(event.amount, f"does not match raw value {raw_units}")

        if source_units == 0:
            raise InvalidAmount(event.amount, "zero-value transfer")
        return asset.payout_units(event.amount)

    async def _source_timestamp(self, event: InboundTransferEvent) -> int:
        """Block time of the source transfer, or a safe lower bound."""
        if event.block_timestamp is not None:
            return event.block_timestamp

        if self.source is not None:
            try:
                tx = await self.rpc.call(
                    "get_transaction", self.source.client.get_transaction, event.source_tx_id
                )
                if tx is not None and tx.block_height is not None:
                    block = await self.rpc.call("get_block", self.source.client.get_block, tx.block_height)
                    return block.timestamp
            except RpcFatal as e:
                logger.warning("source_timestamp_lookup_failed", source_tx_id=event.source_tx_id, error=str(e))

        return int(time.time()) - SOURCE_TIME_SKEW_SECONDS

    def _start_monitor(self, pending: PendingConfirmation) -> None:
        monitor = ConfirmationMonitor(
            pending,
            self.destination,
            bridge_wallet=self.payout_wallet,
            settings=self.monitor_settings,
            rpc=self.rpc,
        )
        task = asyncio.create_task(self._run_monitor(monitor))
        self._monitor_tasks.add(task)
        task.add_done_callback(self._monitor_tasks.discard)

    async def _run_monitor(self, monitor: ConfirmationMonitor) -> MonitorOutcome:
        outcome = await monitor.run()
        self.outcomes.append(outcome)
        if outcome.state is MonitorState.CONFIRMED:
            self.state.confirmed += 1
        else:
            self.state.timed_out += 1
        if self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome

    async def wait_for_monitors(self) -> list[MonitorOutcome]:
        """Wait until every monitor started so far reaches a terminal state."""
        while self._monitor_tasks:
            await asyncio.gather(*list(self._monitor_tasks))
        return list(self.outcomes)
