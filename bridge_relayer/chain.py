"""
Chain capability interface consumed by the relay core.

The core never talks to a node directly. It goes through `ChainReader`
(every endpoint) and `ChainSigner` (destination endpoint only). The web3
implementation lives in `evm.py`; `MockChainClient` below is an in-memory
chain for tests and dry runs.
"""

import itertools
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class FeeParams:
    """EIP-1559 fee settings for destination payouts (all values in wei)."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_limit: Optional[int] = None


@dataclass(frozen=True)
class BlockInfo:
    height: int
    timestamp: int
    tx_refs: list[str]


@dataclass(frozen=True)
class TxInfo:
    tx_id: str
    from_address: str
    to_address: Optional[str]
    value: int
    block_height: Optional[int]


@dataclass(frozen=True)
class TransferLog:
    """Decoded ERC-20 Transfer event."""

    from_address: str
    to_address: str
    value: int
    tx_id: str
    block_height: int


@dataclass(frozen=True)
class Receipt:
    tx_id: str
    status: int  # 1 = success, 0 = reverted
    block_height: int
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@runtime_checkable
class ChainReader(Protocol):
    """Read-only chain access."""

    async def get_balance(self, address: str) -> int: ...

    async def get_block_height(self) -> int: ...

    async def get_block(self, height: int) -> BlockInfo: ...

    async def get_transaction(self, ref: str) -> Optional[TxInfo]: ...

    async def query_transfer_logs(
        self,
        contract: str,
        from_address: str,
        to_address: str,
        from_height: int,
        to_height: int,
    ) -> list[TransferLog]: ...


@runtime_checkable
class ChainSigner(Protocol):
    """Transaction submission for the bridge wallet."""

    @property
    def address(self) -> str: ...

    async def submit_native_transfer(self, to: str, value: int, fee: FeeParams) -> str: ...

    async def submit_contract_transfer(
        self, contract: str, to: str, value: int, fee: FeeParams
    ) -> str: ...

    async def await_confirmation(self, tx_id: str, confirmations: int = 1) -> Receipt: ...


@dataclass
class _MockBlock:
    timestamp: int
    txs: list[TxInfo] = field(default_factory=list)


class MockChainClient:
    """
    In-memory chain implementing both `ChainReader` and `ChainSigner`.

    Submitted transfers are mined into a new block immediately and credited
    to the recipient, so a monitor started afterwards can observe them.
    """

    def __init__(self, signer_address: str = "0x" + "b" * 40, start_height: int = 100, start_time: int = 1_700_000_000):
        self._signer_address = signer_address
        self._blocks: dict[int, _MockBlock] = {start_height: _MockBlock(timestamp=start_time)}
        self._balances: dict[str, int] = {}
        self._logs: list[tuple[str, TransferLog]] = []
        self._receipts: dict[str, Receipt] = {}
        self._tx_counter = itertools.count(1)
        self.block_interval = 2
        self.revert_next = False
        self.submissions: list[dict] = []

    # Test setup helpers

    @property
    def head(self) -> int:
        return max(self._blocks)

    def set_balance(self, address: str, value: int) -> None:
        self._balances[address.lower()] = value

    def mine_block(self, timestamp: Optional[int] = None) -> int:
        """Append an empty block and return its height."""
        height = self.head + 1
        if timestamp is None:
            timestamp = self._blocks[self.head].timestamp + self.block_interval
        self._blocks[height] = _MockBlock(timestamp=timestamp)
        return height

    def add_native_transfer(
        self,
        from_address: str,
        to_address: str,
        value: int,
        timestamp: Optional[int] = None,
        height: Optional[int] = None,
    ) -> TxInfo:
        """Record a native transfer in a block (a new one unless `height` is given)."""
        if height is None:
            height = self.mine_block(timestamp)
        tx = TxInfo(
            tx_id=self._next_tx_id(),
            from_address=from_address,
            to_address=to_address,
            value=value,
            block_height=height,
        )
        self._blocks[height].txs.append(tx)
        key = to_address.lower()
        self._balances[key] = self._balances.get(key, 0) + value
        return tx

    def add_token_transfer(
        self,
        contract: str,
        from_address: str,
        to_address: str,
        value: int,
        timestamp: Optional[int] = None,
    ) -> TransferLog:
        """Record an ERC-20 Transfer log in a new block."""
        height = self.mine_block(timestamp)
        tx = TxInfo(
            tx_id=self._next_tx_id(),
            from_address=from_address,
            to_address=contract,
            value=0,
            block_height=height,
        )
        self._blocks[height].txs.append(tx)
        log = TransferLog(
            from_address=from_address,
            to_address=to_address,
            value=value,
            tx_id=tx.tx_id,
            block_height=height,
        )
        self._logs.append((contract.lower(), log))
        return log

    def _next_tx_id(self) -> str:
        return f"0x{next(self._tx_counter):064x}"

    # ChainReader

    async def get_balance(self, address: str) -> int:
        return self._balances.get(address.lower(), 0)

    async def get_block_height(self) -> int:
        return self.head

    async def get_block(self, height: int) -> BlockInfo:
        block = self._blocks.get(height)
        if block is None:
            raise LookupError(f"block {height} not found")
        return BlockInfo(height=height, timestamp=block.timestamp, tx_refs=[tx.tx_id for tx in block.txs])

    async def get_transaction(self, ref: str) -> Optional[TxInfo]:
        for block in self._blocks.values():
            for tx in block.txs:
                if tx.tx_id == ref:
                    return tx
        return None

    async def query_transfer_logs(
        self,
        contract: str,
        from_address: str,
        to_address: str,
        from_height: int,
        to_height: int,
    ) -> list[TransferLog]:
        return [
            log
            for log_contract, log in self._logs
            if log_contract == contract.lower()
            and log.from_address.lower() == from_address.lower()
            and log.to_address.lower() == to_address.lower()
            and from_height <= log.block_height <= to_height
        ]

    # ChainSigner

    @property
    def address(self) -> str:
        return self._signer_address

    async def submit_native_transfer(self, to: str, value: int, fee: FeeParams) -> str:
        self.submissions.append({"kind": "native", "to": to, "value": value, "fee": fee})
        if self._consume_revert():
            return self._reverted_tx()
        tx = self.add_native_transfer(self._signer_address, to, value)
        self._receipts[tx.tx_id] = Receipt(tx_id=tx.tx_id, status=1, block_height=tx.block_height or 0)
        return tx.tx_id

    async def submit_contract_transfer(
        self, contract: str, to: str, value: int, fee: FeeParams
    ) -> str:
        self.submissions.append(
            {"kind": "contract", "contract": contract, "to": to, "value": value, "fee": fee}
        )
        if self._consume_revert():
            return self._reverted_tx()
        log = self.add_token_transfer(contract, self._signer_address, to, value)
        self._receipts[log.tx_id] = Receipt(tx_id=log.tx_id, status=1, block_height=log.block_height)
        return log.tx_id

    async def await_confirmation(self, tx_id: str, confirmations: int = 1) -> Receipt:
        receipt = self._receipts.get(tx_id)
        if receipt is None:
            raise LookupError(f"transaction {tx_id} not found")
        return receipt

    def _consume_revert(self) -> bool:
        reverted, self.revert_next = self.revert_next, False
        return reverted

    def _reverted_tx(self) -> str:
        height = self.mine_block()
        tx_id = self._next_tx_id()
        self._receipts[tx_id] = Receipt(tx_id=tx_id, status=0, block_height=height)
        return tx_id
