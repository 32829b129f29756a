"""
Static registry of bridged assets and chain endpoints.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .amounts import rescale, to_base_units
from .chain import ChainReader, ChainSigner
from .errors import ExecutionError, ExecutionErrorKind, Unresolved

NATIVE_MARKER = "native"

# Native currency precision on EVM chains (wei)
NATIVE_DECIMALS = 18


@dataclass(frozen=True)
class AssetDescriptor:
    """
    A bridged asset.

    Exactly one payout mode applies: either the destination pays out its
    native currency (`native_on_destination`), or it calls `transfer` on
    `destination_address`.
    """

    symbol: str
    source_address: str  # contract on the source chain, or NATIVE_MARKER
    source_decimals: int
    destination_address: Optional[str] = None
    native_on_destination: bool = False

    def __post_init__(self) -> None:
        if (self.destination_address is not None) == self.native_on_destination:
            raise ValueError(
                f"{self.symbol}: set exactly one of destination_address "
                "or native_on_destination"
            )
        if self.source_decimals < 0:
            raise ValueError(f"{self.symbol}: source_decimals must be non-negative")

    @property
    def mode(self) -> str:
        return "native" if self.native_on_destination else "token"

    @property
    def payout_decimals(self) -> int:
        """Precision of the amount paid out on the destination chain."""
        return NATIVE_DECIMALS if self.native_on_destination else self.source_decimals

    def payout_units(self, amount: str) -> int:
        """
        Integer amount to pay out on the destination for a source `amount`.

        Native payouts are rescaled to wei; token payouts keep the source
        precision since both token contracts share the denomination.
        Raises InvalidAmount for malformed input.
        """
        units = to_base_units(amount, self.source_decimals)
        return rescale(units, self.source_decimals, self.payout_decimals)


@dataclass(frozen=True)
class ChainEndpoint:
    """RPC access to one chain; `signer` is only set for the payout chain."""

    chain: str
    chain_id: int
    client: ChainReader
    signer: Optional[ChainSigner] = None

    @property
    def read_only(self) -> bool:
        return self.signer is None

    def require_signer(self) -> ChainSigner:
        if self.signer is None:
            raise ExecutionError(
                ExecutionErrorKind.UNCONFIGURED,
                f"endpoint {self.chain} has no signing capability",
            )
        return self.signer


class Registry:
    """Case-insensitive lookup of assets by source address and endpoints by chain."""

    def __init__(self, assets: Iterable[AssetDescriptor], endpoints: Iterable[ChainEndpoint]):
        self._assets: dict[str, AssetDescriptor] = {}
        for asset in assets:
            key = asset.source_address.lower()
            if key in self._assets:
                raise ValueError(f"duplicate source address for {asset.symbol}: {asset.source_address}")
            self._assets[key] = asset

        self._endpoints = {endpoint.chain.lower(): endpoint for endpoint in endpoints}

    @property
    def assets(self) -> list[AssetDescriptor]:
        return list(self._assets.values())

    def resolve_asset(self, source_address: Optional[str]) -> Optional[AssetDescriptor]:
        """Asset registered for a source contract address (or NATIVE_MARKER)."""
        if not source_address:
            return None
        return self._assets.get(source_address.lower())

    def endpoint_for(self, chain: str) -> ChainEndpoint:
        endpoint = self._endpoints.get(chain.lower())
        if endpoint is None:
            raise Unresolved(f"no endpoint registered for chain {chain!r}")
        return endpoint
