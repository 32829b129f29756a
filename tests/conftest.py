"""
Shared fixtures: an in-memory destination chain and the default asset table.
"""

import pytest

from bridge_relayer.chain import FeeParams, MockChainClient
from bridge_relayer.registry import AssetDescriptor, ChainEndpoint, Registry
from bridge_relayer.rpc import RetryPolicy, RpcCaller

START_HEIGHT = 100
START_TIME = 1_700_000_000


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def bridge_wallet() -> str:
    return "0x9852513815fd49AdE1C6A6A98851617Ff4a2e8a9"


@pytest.fixture
def sender() -> str:
    return "0x" + "aa" * 20


@pytest.fixture
def wbtc() -> AssetDescriptor:
    return AssetDescriptor(
        symbol="WBTC",
        source_address="0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f",
        source_decimals=8,
        native_on_destination=True,
    )


@pytest.fixture
def usdt() -> AssetDescriptor:
    return AssetDescriptor(
        symbol="USDT",
        source_address="0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        source_decimals=6,
        destination_address="0xfe9f969faf8ad72a83b761138bf25de87eff9dd2",
    )


@pytest.fixture
def dest_chain(bridge_wallet: str) -> MockChainClient:
    return MockChainClient(signer_address=bridge_wallet, start_height=START_HEIGHT, start_time=START_TIME)


@pytest.fixture
def source_chain() -> MockChainClient:
    return MockChainClient(start_height=5_000, start_time=START_TIME - 600)


@pytest.fixture
def destination(dest_chain: MockChainClient) -> ChainEndpoint:
    return ChainEndpoint(chain="bitlayer", chain_id=200901, client=dest_chain, signer=dest_chain)


@pytest.fixture
def source(source_chain: MockChainClient) -> ChainEndpoint:
    return ChainEndpoint(chain="arbitrum", chain_id=42161, client=source_chain)


@pytest.fixture
def registry(wbtc, usdt, destination, source) -> Registry:
    return Registry([wbtc, usdt], [source, destination])


@pytest.fixture
def fee() -> FeeParams:
    return FeeParams(max_fee_per_gas=50_000_007, max_priority_fee_per_gas=50_000_000)


@pytest.fixture
def rpc() -> RpcCaller:
    return RpcCaller(RetryPolicy(max_retries=3, initial_backoff=0.0), sleep=no_sleep)
