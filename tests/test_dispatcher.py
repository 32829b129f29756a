"""
End-to-end tests for the notification dispatcher: guard, payout and
confirmation monitor wired to in-memory chains.
"""

import asyncio
import time

import pytest

from bridge_relayer.chain import MockChainClient
from bridge_relayer.dispatcher import SOURCE_TIME_SKEW_SECONDS, DispatchStatus, NotificationDispatcher
from bridge_relayer.errors import ExecutionErrorKind, Unresolved
from bridge_relayer.executor import PayoutExecutor
from bridge_relayer.guard import IdempotencyGuard
from bridge_relayer.models import ContractMeta, InboundTransferEvent, NotificationBatch
from bridge_relayer.monitor import MonitorSettings, MonitorState
from bridge_relayer.registry import AssetDescriptor, ChainEndpoint, Registry

START_TIME = 1_700_000_000


def make_event(
    asset: AssetDescriptor,
    sender: str,
    to: str,
    amount: str = "0.005",
    tx_id: str = "0x" + "01" * 32,
    block_timestamp=START_TIME - 100,
) -> InboundTransferEvent:
    return InboundTransferEvent(
        from_address=sender,
        to_address=to,
        amount=amount,
        source_tx_id=tx_id,
        contract_meta=ContractMeta(address=asset.source_address, decimals=asset.source_decimals),
        block_timestamp=block_timestamp,
    )


def make_batch(*events: InboundTransferEvent, batch_id: str = "wh_test") -> NotificationBatch:
    return NotificationBatch(batch_id=batch_id, delivery_id="whevt_1", source_network="ARB_MAINNET", events=list(events))


@pytest.fixture
def guard() -> IdempotencyGuard:
    return IdempotencyGuard(expiry_seconds=None)


@pytest.fixture
def dispatcher(bridge_wallet, registry, guard, fee, rpc) -> NotificationDispatcher:
    return NotificationDispatcher(
        bridge_wallet=bridge_wallet,
        registry=registry,
        guard=guard,
        executor=PayoutExecutor(fee=fee, rpc=rpc),
        destination_chain="bitlayer",
        source_chain="arbitrum",
        monitor_settings=MonitorSettings(poll_interval=0, batch_delay=0, max_attempts=3),
        rpc=rpc,
    )


class TestDispatch:
    """Happy paths."""

    @pytest.mark.asyncio
    async def test_native_payout_confirmed(self, dispatcher, dest_chain, guard, wbtc, sender, bridge_wallet) -> None:
        event = make_event(wbtc, sender, bridge_wallet)

        report = await dispatcher.dispatch(make_batch(event))

        [result] = report.results
        assert result.status is DispatchStatus.ACCEPTED
        assert result.payout.value == 5 * 10**15
        assert guard.is_claimed(event.source_tx_id)

        [outcome] = await dispatcher.wait_for_monitors()
        assert outcome.state is MonitorState.CONFIRMED
        assert outcome.confirmed_tx_id == result.payout.tx_hash
        assert dispatcher.state.confirmed == 1

    @pytest.mark.asyncio
    async def test_token_payout_confirmed(self, dispatcher, dest_chain, usdt, sender, bridge_wallet) -> None:
        report = await dispatcher.dispatch(make_batch(make_event(usdt, sender, bridge_wallet, amount="12.5")))

        assert report.results[0].status is DispatchStatus.ACCEPTED
        assert dest_chain.submissions[0]["contract"] == usdt.destination_address
        assert dest_chain.submissions[0]["value"] == 12_500_000

        [outcome] = await dispatcher.wait_for_monitors()
        assert outcome.state is MonitorState.CONFIRMED

    @pytest.mark.asyncio
    async def test_events_processed_in_order(self, dispatcher, dest_chain, wbtc, usdt, sender, bridge_wallet) -> None:
        batch = make_batch(
            make_event(wbtc, sender, bridge_wallet, tx_id="0x01"),
            make_event(usdt, sender, bridge_wallet, amount="3", tx_id="0x02"),
            make_event(wbtc, sender, bridge_wallet, amount="0.1", tx_id="0x03"),
        )

        report = await dispatcher.dispatch(batch)

        assert [r.source_tx_id for r in report.results] == ["0x01", "0x02", "0x03"]
        assert [s["value"] for s in dest_chain.submissions] == [5 * 10**15, 3_000_000, 10**17]
        await dispatcher.wait_for_monitors()

    @pytest.mark.asyncio
    async def test_outcome_callback(self, registry, bridge_wallet, fee, rpc, wbtc, sender) -> None:
        outcomes = []
        dispatcher = NotificationDispatcher(
            bridge_wallet=bridge_wallet,
            registry=registry,
            guard=IdempotencyGuard(),
            executor=PayoutExecutor(fee=fee, rpc=rpc),
            destination_chain="bitlayer",
            monitor_settings=MonitorSettings(poll_interval=0, max_attempts=3),
            rpc=rpc,
            on_outcome=outcomes.append,
        )

        await dispatcher.dispatch(make_batch(make_event(wbtc, sender, bridge_wallet)))
        await dispatcher.wait_for_monitors()

        assert [o.state for o in outcomes] == [MonitorState.CONFIRMED]


class TestFiltering:
    """Events that never reach the executor."""

    @pytest.mark.asyncio
    async def test_wrong_recipient(self, dispatcher, dest_chain, guard, wbtc, sender) -> None:
        event = make_event(wbtc, sender, "0x" + "12" * 20)

        report = await dispatcher.dispatch(make_batch(event))

        assert report.results[0].status is DispatchStatus.WRONG_RECIPIENT
        assert dest_chain.submissions == []
        assert not guard.is_claimed(event.source_tx_id)

    @pytest.mark.asyncio
    async def test_recipient_compared_case_insensitively(self, dispatcher, wbtc, sender, bridge_wallet) -> None:
        report = await dispatcher.dispatch(make_batch(make_event(wbtc, sender, bridge_wallet.lower())))

        assert report.results[0].status is DispatchStatus.ACCEPTED
        await dispatcher.wait_for_monitors()

    @pytest.mark.asyncio
    async def test_unregistered_asset(self, dispatcher, dest_chain, sender, bridge_wallet) -> None:
        unknown = AssetDescriptor(symbol="DAI", source_address="0x" + "da" * 20, source_decimals=18, destination_address="0x01")

        report = await dispatcher.dispatch(make_batch(make_event(unknown, sender, bridge_wallet)))

        assert report.results[0].status is DispatchStatus.UNRESOLVED
        assert dest_chain.submissions == []

    @pytest.mark.asyncio
    async def test_zero_amount_rejected(self, dispatcher, dest_chain, guard, wbtc, usdt, sender, bridge_wallet) -> None:
        """Zero-value transfers never cost destination gas."""
        native = make_event(wbtc, sender, bridge_wallet, amount="0", tx_id="0x01")
        token = make_event(usdt, sender, bridge_wallet, amount="0.000000", tx_id="0x02")

        report = await dispatcher.dispatch(make_batch(native, token))

        assert [r.status for r in report.results] == [DispatchStatus.INVALID_AMOUNT] * 2
        assert dest_chain.submissions == []
        assert len(guard) == 0
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_raw_value_must_match_amount(self, dispatcher, dest_chain, guard, wbtc, sender, bridge_wallet) -> None:
        event = InboundTransferEvent(
            from_address=sender,
            to_address=bridge_wallet,
            amount="0.005",
            source_tx_id="0x01",
            contract_meta=ContractMeta(address=wbtc.source_address, decimals=8, raw_value="0x7a121"),
            block_timestamp=START_TIME - 100,
        )

        report = await dispatcher.dispatch(make_batch(event))

        assert report.results[0].status is DispatchStatus.INVALID_AMOUNT
        assert "raw value 500001" in report.results[0].error
        assert dest_chain.submissions == []
        assert not guard.is_claimed("0x01")

    @pytest.mark.asyncio
    async def test_raw_value_decimals_must_match_registry(self, dispatcher, dest_chain, wbtc, sender, bridge_wallet) -> None:
        event = InboundTransferEvent(
            from_address=sender,
            to_address=bridge_wallet,
            amount="0.005",
            source_tx_id="0x01",
            contract_meta=ContractMeta(address=wbtc.source_address, decimals=18, raw_value=str(5 * 10**15)),
            block_timestamp=START_TIME - 100,
        )

        report = await dispatcher.dispatch(make_batch(event))

        assert report.results[0].status is DispatchStatus.INVALID_AMOUNT
        assert dest_chain.submissions == []

    @pytest.mark.asyncio
    async def test_matching_raw_value_accepted(self, dispatcher, dest_chain, wbtc, sender, bridge_wallet) -> None:
        event = InboundTransferEvent(
            from_address=sender,
            to_address=bridge_wallet,
            amount="0.005",
            source_tx_id="0x01",
            contract_meta=ContractMeta(address=wbtc.source_address, decimals=8, raw_value="0x7a120"),
            block_timestamp=START_TIME - 100,
        )

        report = await dispatcher.dispatch(make_batch(event))

        assert report.results[0].status is DispatchStatus.ACCEPTED
        assert dest_chain.submissions[0]["value"] == 5 * 10**15
        await dispatcher.wait_for_monitors()

    @pytest.mark.asyncio
    async def test_invalid_amount(self, dispatcher, dest_chain, guard, wbtc, sender, bridge_wallet) -> None:
        event = make_event(wbtc, sender, bridge_wallet, amount="not-a-number")

        report = await dispatcher.dispatch(make_batch(event))

        assert report.results[0].status is DispatchStatus.INVALID_AMOUNT
        assert dest_chain.submissions == []
        assert not guard.is_claimed(event.source_tx_id)


class TestIdempotency:
    """At most one payout per source transaction."""

    @pytest.mark.asyncio
    async def test_duplicate_in_same_batch(self, dispatcher, dest_chain, wbtc, sender, bridge_wallet) -> None:
        event = make_event(wbtc, sender, bridge_wallet)

        report = await dispatcher.dispatch(make_batch(event, event))

        assert [r.status for r in report.results] == [DispatchStatus.ACCEPTED, DispatchStatus.DUPLICATE]
        assert len(dest_chain.submissions) == 1
        await dispatcher.wait_for_monitors()

    @pytest.mark.asyncio
    async def test_concurrent_batches_single_payout(self, dispatcher, dest_chain, wbtc, sender, bridge_wallet) -> None:
        event = make_event(wbtc, sender, bridge_wallet)

        reports = await asyncio.gather(
            dispatcher.dispatch(make_batch(event, batch_id="wh_a")),
            dispatcher.dispatch(make_batch(event, batch_id="wh_b")),
        )

        statuses = sorted(r.results[0].status.value for r in reports)
        assert statuses == ["accepted", "duplicate"]
        assert len(dest_chain.submissions) == 1
        await dispatcher.wait_for_monitors()

    @pytest.mark.asyncio
    async def test_failed_payout_releases_claim(self, dispatcher, dest_chain, guard, wbtc, sender, bridge_wallet) -> None:
        """A reverted payout frees the id, so redelivery pays out."""
        event = make_event(wbtc, sender, bridge_wallet)
        dest_chain.revert_next = True

        first = await dispatcher.dispatch(make_batch(event))

        assert first.results[0].status is DispatchStatus.FAILED
        assert first.results[0].payout.error.kind is ExecutionErrorKind.REVERTED
        assert not guard.is_claimed(event.source_tx_id)
        assert dispatcher.in_flight == 0

        second = await dispatcher.dispatch(make_batch(event))

        assert second.results[0].status is DispatchStatus.ACCEPTED
        assert len(dest_chain.submissions) == 2
        await dispatcher.wait_for_monitors()

    @pytest.mark.asyncio
    async def test_unreadable_receipt_keeps_claim(self, bridge_wallet, wbtc, usdt, fee, rpc, sender) -> None:
        """A broadcast payout whose receipt wait fails is never paid a second time."""

        class ReceiptTimeoutChain(MockChainClient):
            async def await_confirmation(self, tx_id, confirmations=1):
                raise TimeoutError(f"transaction {tx_id} not in chain after 120 seconds")

        chain = ReceiptTimeoutChain(signer_address=bridge_wallet, start_time=START_TIME)
        registry = Registry([wbtc, usdt], [ChainEndpoint("bitlayer", 200901, chain, signer=chain)])
        guard = IdempotencyGuard()
        dispatcher = NotificationDispatcher(
            bridge_wallet,
            registry,
            guard,
            PayoutExecutor(fee=fee, rpc=rpc),
            "bitlayer",
            monitor_settings=MonitorSettings(poll_interval=0, batch_delay=0, max_attempts=3),
            rpc=rpc,
        )
        event = make_event(wbtc, sender, bridge_wallet)

        first = await dispatcher.dispatch(make_batch(event))
        second = await dispatcher.dispatch(make_batch(event))

        assert first.results[0].status is DispatchStatus.ACCEPTED
        assert first.results[0].payout.receipt_pending
        assert second.results[0].status is DispatchStatus.DUPLICATE
        assert len(chain.submissions) == 1
        assert guard.is_claimed(event.source_tx_id)
        assert await chain.get_balance(sender) == 5 * 10**15

        # The monitor still finds the payout on-chain
        [outcome] = await dispatcher.wait_for_monitors()
        assert outcome.state is MonitorState.CONFIRMED
        assert outcome.confirmed_tx_id == first.results[0].payout.tx_hash

    @pytest.mark.asyncio
    async def test_timed_out_payout_stays_claimed(self, dispatcher, guard, wbtc, sender, bridge_wallet) -> None:
        """A payout that was sent but never observed is not retried."""
        event = make_event(wbtc, sender, bridge_wallet, block_timestamp=START_TIME + 10_000)

        await dispatcher.dispatch(make_batch(event))
        [outcome] = await dispatcher.wait_for_monitors()

        assert outcome.state is MonitorState.TIMED_OUT
        assert outcome.attempts == 3
        assert guard.is_claimed(event.source_tx_id)
        assert dispatcher.state.timed_out == 1

    @pytest.mark.asyncio
    async def test_baseline_failure_releases_claim(self, bridge_wallet, wbtc, usdt, fee, rpc, sender) -> None:
        class Unreachable(MockChainClient):
            async def get_block_height(self):
                raise RuntimeError("connection refused")

        chain = Unreachable(signer_address=bridge_wallet)
        registry = Registry([wbtc, usdt], [ChainEndpoint("bitlayer", 200901, chain, signer=chain)])
        guard = IdempotencyGuard()
        dispatcher = NotificationDispatcher(
            bridge_wallet, registry, guard, PayoutExecutor(fee=fee, rpc=rpc), "bitlayer", rpc=rpc
        )
        event = make_event(wbtc, sender, bridge_wallet)

        report = await dispatcher.dispatch(make_batch(event))

        assert report.results[0].status is DispatchStatus.FAILED
        assert report.results[0].payout.error.kind is ExecutionErrorKind.SUBMISSION_FAILED
        assert chain.submissions == []
        assert not guard.is_claimed(event.source_tx_id)


class TestSourceTimestamp:
    """Resolution of the source event time used by the monitor."""

    @pytest.mark.asyncio
    async def test_event_timestamp_preferred(self, dispatcher, wbtc, sender, bridge_wallet) -> None:
        event = make_event(wbtc, sender, bridge_wallet, block_timestamp=1234)
        assert await dispatcher._source_timestamp(event) == 1234

    @pytest.mark.asyncio
    async def test_looked_up_on_source_chain(self, dispatcher, source_chain, wbtc, sender, bridge_wallet) -> None:
        tx = source_chain.add_native_transfer(sender, bridge_wallet, 1)
        block = await source_chain.get_block(tx.block_height)
        event = make_event(wbtc, sender, bridge_wallet, tx_id=tx.tx_id, block_timestamp=None)

        assert await dispatcher._source_timestamp(event) == block.timestamp

    @pytest.mark.asyncio
    async def test_falls_back_to_receipt_time(self, dispatcher, wbtc, sender, bridge_wallet) -> None:
        event = make_event(wbtc, sender, bridge_wallet, tx_id="0xunknown", block_timestamp=None)

        before = int(time.time()) - SOURCE_TIME_SKEW_SECONDS
        ts = await dispatcher._source_timestamp(event)
        after = int(time.time()) - SOURCE_TIME_SKEW_SECONDS

        assert before <= ts <= after


class TestPayoutWallet:
    """The monitor matches transfers sent by the signing wallet."""

    def test_signer_address_used(self, dispatcher, dest_chain) -> None:
        assert dispatcher.payout_wallet == dest_chain.address

    def test_unknown_destination_chain(self, bridge_wallet, registry, fee) -> None:
        with pytest.raises(Unresolved):
            NotificationDispatcher(bridge_wallet, registry, IdempotencyGuard(), PayoutExecutor(fee=fee), "solana")
