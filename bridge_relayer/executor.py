"""
Destination-chain payout execution.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from .amounts import from_base_units
from .chain import FeeParams, Receipt
from .errors import ExecutionError, ExecutionErrorKind, InvalidAmount, RpcFatal
from .models import InboundTransferEvent
from .registry import AssetDescriptor, ChainEndpoint
from .rpc import RpcCaller

logger = structlog.get_logger()


@dataclass
class PayoutResult:
    """
    Result of a destination payout.

    `receipt_pending` marks a payout that was broadcast but whose receipt
    could not be read; it counts as sent and is left to the monitor.
    """

    success: bool
    tx_hash: Optional[str] = None
    value: Optional[int] = None
    error: Optional[ExecutionError] = None
    gas_used: Optional[int] = None
    receipt_pending: bool = False


class PayoutExecutor:
    """
    Pays the original sender on the destination chain.

    Native-mode assets are paid in the destination's native currency,
    token-mode assets through the destination token's `transfer`. Each
    payout waits for one confirmation. Nothing is retried here beyond the
    rate-limit handling in `RpcCaller`.
    """

    def __init__(
        self,
        fee: FeeParams,
        rpc: Optional[RpcCaller] = None,
        confirmations: int = 1,
        token_fee: Optional[FeeParams] = None,
    ):
        self.fee = fee
        self.token_fee = token_fee or fee
        self.rpc = rpc or RpcCaller()
        self.confirmations = confirmations

    async def execute(
        self,
        event: InboundTransferEvent,
        asset: AssetDescriptor,
        destination: ChainEndpoint,
    ) -> PayoutResult:
        """Submit the payout for `event` and wait for its receipt."""
        recipient = event.from_address
        tx_hash: Optional[str] = None

        try:
            signer = destination.require_signer()
            value = asset.payout_units(event.amount)

            if asset.native_on_destination:
                logger.info(
                    "native_payout_amount",
                    symbol=asset.symbol,
                    source_amount=event.amount,
                    payout_amount=from_base_units(value, asset.payout_decimals),
                    payout_wei=value,
                )
                tx_hash = await self.rpc.call(
                    "submit_native_transfer",
                    signer.submit_native_transfer,
                    recipient,
                    value,
                    self.fee,
                )
            else:
                if not asset.destination_address:
                    raise ExecutionError(
                        ExecutionErrorKind.UNCONFIGURED,
                        f"no destination contract registered for {asset.symbol}",
                    )
                tx_hash = await self.rpc.call(
                    "submit_contract_transfer",
                    signer.submit_contract_transfer,
                    asset.destination_address,
                    recipient,
                    value,
                    self.token_fee,
                )

            logger.info(
                "payout_tx_sent",
                tx_hash=tx_hash,
                chain=destination.chain,
                symbol=asset.symbol,
                recipient=recipient,
                value=value,
                source_tx_id=event.source_tx_id,
            )

        except ExecutionError as e:
            logger.error("payout_unconfigured", symbol=asset.symbol, error=e.message)
            return PayoutResult(success=False, tx_hash=tx_hash, error=e)
        except (RpcFatal, InvalidAmount) as e:
            logger.error(
                "payout_submission_error",
                symbol=asset.symbol,
                source_tx_id=event.source_tx_id,
                tx_hash=tx_hash,
                error=str(e),
            )
            return PayoutResult(
                success=False,
                tx_hash=tx_hash,
                error=ExecutionError(ExecutionErrorKind.SUBMISSION_FAILED, str(e), tx_hash),
            )

        # The payout is broadcast from here on: it must never be reported as
        # a failure unless a receipt says it reverted.
        try:
            receipt: Receipt = await self.rpc.call(
                "await_confirmation",
                signer.await_confirmation,
                tx_hash,
                self.confirmations,
            )
        except RpcFatal as e:
            logger.warning(
                "payout_receipt_unavailable",
                tx_hash=tx_hash,
                symbol=asset.symbol,
                source_tx_id=event.source_tx_id,
                error=str(e),
            )
            return PayoutResult(success=True, tx_hash=tx_hash, value=value, receipt_pending=True)

        if not receipt.succeeded:
            logger.error("payout_tx_reverted", tx_hash=tx_hash, symbol=asset.symbol)
            return PayoutResult(
                success=False,
                tx_hash=tx_hash,
                error=ExecutionError(ExecutionErrorKind.REVERTED, "Transaction reverted", tx_hash),
            )

        logger.info(
            "payout_tx_confirmed",
            tx_hash=tx_hash,
            block_height=receipt.block_height,
            gas_used=receipt.gas_used,
        )
        return PayoutResult(success=True, tx_hash=tx_hash, value=value, gas_used=receipt.gas_used)
