"""
EVM chain access via web3 for source reads and destination payouts.
"""

import asyncio
from typing import Optional

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound
from web3.types import TxReceipt

from .chain import BlockInfo, FeeParams, Receipt, TransferLog, TxInfo
from .registry import ChainEndpoint

logger = structlog.get_logger()


# ERC-20 ABI (minimal for transfer)
ERC20_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))

DEFAULT_NATIVE_GAS = 21_000
DEFAULT_TOKEN_GAS = 100_000
CONFIRMATION_POLL_SECONDS = 1.0


def address_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def topic_address(topic: bytes | str) -> str:
    """Recover the checksum address from a 32-byte indexed topic."""
    hex_topic = topic if isinstance(topic, str) else Web3.to_hex(topic)
    return Web3.to_checksum_address("0x" + hex_topic[-40:])


class EvmChainClient:
    """Async read access to one EVM chain (implements ChainReader)."""

    def __init__(self, rpc_url: str, w3: Optional[AsyncWeb3] = None):
        self.rpc_url = rpc_url
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))

    async def get_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(Web3.to_checksum_address(address))

    async def get_block_height(self) -> int:
        return await self.w3.eth.block_number

    async def get_block(self, height: int) -> BlockInfo:
        block = await self.w3.eth.get_block(height)
        return BlockInfo(
            height=block["number"],
            timestamp=block["timestamp"],
            tx_refs=[Web3.to_hex(tx_hash) for tx_hash in block["transactions"]],
        )

    async def get_transaction(self, ref: str) -> Optional[TxInfo]:
        try:
            tx = await self.w3.eth.get_transaction(ref)
        except TransactionNotFound:
            return None
        return TxInfo(
            tx_id=Web3.to_hex(tx["hash"]),
            from_address=tx["from"],
            to_address=tx.get("to"),
            value=tx["value"],
            block_height=tx.get("blockNumber"),
        )

    async def query_transfer_logs(
        self,
        contract: str,
        from_address: str,
        to_address: str,
        from_height: int,
        to_height: int,
    ) -> list[TransferLog]:
        logs = await self.w3.eth.get_logs(
            {
                "address": Web3.to_checksum_address(contract),
                "fromBlock": from_height,
                "toBlock": to_height,
                "topics": [TRANSFER_TOPIC, address_topic(from_address), address_topic(to_address)],
            }
        )
        return [
            TransferLog(
                from_address=topic_address(log["topics"][1]),
                to_address=topic_address(log["topics"][2]),
                value=int.from_bytes(bytes(log["data"]), "big"),
                tx_id=Web3.to_hex(log["transactionHash"]),
                block_height=log["blockNumber"],
            )
            for log in logs
        ]


class EvmSigner:
    """Signs and submits bridge payouts (implements ChainSigner)."""

    def __init__(
        self,
        w3: AsyncWeb3,
        private_key: str,
        chain_id: int,
        receipt_timeout: float = 120.0,
    ):
        self.w3 = w3
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout

    @property
    def address(self) -> str:
        return self.account.address

    async def get_nonce(self) -> int:
        return await self.w3.eth.get_transaction_count(self.address, "pending")

    def _fee_fields(self, fee: FeeParams, default_gas: int) -> dict:
        return {
            "chainId": self.chain_id,
            "type": 2,
            "maxFeePerGas": fee.max_fee_per_gas,
            "maxPriorityFeePerGas": fee.max_priority_fee_per_gas,
            "gas": fee.gas_limit or default_gas,
        }

    async def _sign_and_send(self, tx: dict) -> str:
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)

    async def submit_native_transfer(self, to: str, value: int, fee: FeeParams) -> str:
        tx = {
            "nonce": await self.get_nonce(),
            "to": Web3.to_checksum_address(to),
            "value": value,
            **self._fee_fields(fee, DEFAULT_NATIVE_GAS),
        }
        return await self._sign_and_send(tx)

    async def submit_contract_transfer(
        self, contract: str, to: str, value: int, fee: FeeParams
    ) -> str:
        token = self.w3.eth.contract(address=Web3.to_checksum_address(contract), abi=ERC20_ABI)
        tx = await token.functions.transfer(Web3.to_checksum_address(to), value).build_transaction(
            {
                "from": self.address,
                "nonce": await self.get_nonce(),
                **self._fee_fields(fee, DEFAULT_TOKEN_GAS),
            }
        )
        return await self._sign_and_send(tx)

    async def await_confirmation(self, tx_id: str, confirmations: int = 1) -> Receipt:
        receipt: TxReceipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_id, timeout=self.receipt_timeout
        )
        block_height = receipt["blockNumber"]
        while confirmations > 1:
            head = await self.w3.eth.block_number
            if head - block_height + 1 >= confirmations:
                break
            await asyncio.sleep(CONFIRMATION_POLL_SECONDS)

        return Receipt(
            tx_id=Web3.to_hex(receipt["transactionHash"]),
            status=receipt["status"],
            block_height=block_height,
            gas_used=receipt.get("gasUsed"),
        )


def create_endpoint(
    chain: str,
    rpc_url: str,
    chain_id: int,
    private_key: Optional[str] = None,
    receipt_timeout: float = 120.0,
) -> ChainEndpoint:
    """Build a ChainEndpoint; the signer is only attached when a key is given."""
    client = EvmChainClient(rpc_url)
    signer = None
    if private_key:
        signer = EvmSigner(client.w3, private_key, chain_id, receipt_timeout=receipt_timeout)

    logger.info(
        "evm_endpoint_initialized",
        chain=chain,
        chain_id=chain_id,
        rpc_url=rpc_url,
        sender=signer.address if signer else None,
    )
    return ChainEndpoint(chain=chain, chain_id=chain_id, client=client, signer=signer)
