"""
Configuration management for the bridge relayer.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .amounts import to_base_units
from .chain import FeeParams
from .monitor import MonitorSettings
from .registry import AssetDescriptor, ChainEndpoint, Registry
from .rpc import RetryPolicy

GWEI_DECIMALS = 9


class AssetSettings(BaseModel):
    """One bridged asset as written in the ASSETS setting (JSON list)."""

    symbol: str
    source_address: str
    source_decimals: int = Field(..., ge=0)
    destination_address: Optional[str] = None
    native_on_destination: bool = False

    def to_descriptor(self) -> AssetDescriptor:
        return AssetDescriptor(
            symbol=self.symbol,
            source_address=self.source_address,
            source_decimals=self.source_decimals,
            destination_address=self.destination_address,
            native_on_destination=self.native_on_destination,
        )


DEFAULT_ASSETS = [
    # WBTC on Arbitrum is paid out as native BTC on BitLayer
    AssetSettings(
        symbol="WBTC",
        source_address="0x2f2a2543B76A4166549F7aaB2e75Bef0aefC5B0f",
        source_decimals=8,
        native_on_destination=True,
    ),
    AssetSettings(
        symbol="USDT",
        source_address="0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        source_decimals=6,
        destination_address="0xfe9f969faf8ad72a83b761138bf25de87eff9dd2",
    ),
]


class Settings(BaseSettings):
    """Environment-based settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Bridge wallet (receives on source, pays out on destination)
    bridge_wallet_address: str = "0x9852513815fd49AdE1C6A6A98851617Ff4a2e8a9"
    private_key: str = ""

    # Source network (read-only)
    source_chain: str = "arbitrum"
    source_rpc_url: str = "https://arb1.arbitrum.io/rpc"
    source_chain_id: int = 42161

    # Destination network
    destination_chain: str = "bitlayer"
    destination_rpc_url: str = "https://rpc.bitlayer.org"
    destination_chain_id: int = 200901

    # Destination fee parameters (gwei, decimal strings)
    max_fee_per_gas_gwei: str = "0.050000007"
    max_priority_fee_per_gas_gwei: str = "0.05"
    native_transfer_gas: Optional[int] = None
    token_transfer_gas: Optional[int] = None
    receipt_timeout_seconds: float = 120.0

    # Assets
    assets: list[AssetSettings] = Field(default_factory=lambda: list(DEFAULT_ASSETS))

    # Idempotency guard
    guard_expiry_seconds: float = 3600.0

    # Confirmation monitor
    monitor_poll_interval_seconds: float = 2.0
    monitor_max_attempts: int = 120
    monitor_scan_batch_size: int = 5
    monitor_batch_delay_seconds: float = 0.5
    monitor_log_chunk_size: int = 5000

    # RPC retry on rate limiting
    rpc_max_retries: int = 3
    rpc_initial_backoff_seconds: float = 1.0


EndpointFactory = Callable[..., ChainEndpoint]


@dataclass
class BridgeConfig:
    """Full relayer configuration."""

    settings: Settings

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "BridgeConfig":
        """Load configuration from environment."""
        settings = Settings(_env_file=env_path) if env_path else Settings()
        return cls(settings=settings)

    def asset_descriptors(self) -> list[AssetDescriptor]:
        return [asset.to_descriptor() for asset in self.settings.assets]

    def fee_params(self, native: bool = True) -> FeeParams:
        s = self.settings
        return FeeParams(
            max_fee_per_gas=to_base_units(s.max_fee_per_gas_gwei, GWEI_DECIMALS),
            max_priority_fee_per_gas=to_base_units(s.max_priority_fee_per_gas_gwei, GWEI_DECIMALS),
            gas_limit=s.native_transfer_gas if native else s.token_transfer_gas,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.settings.rpc_max_retries,
            initial_backoff=self.settings.rpc_initial_backoff_seconds,
        )

    def monitor_settings(self) -> MonitorSettings:
        s = self.settings
        return MonitorSettings(
            poll_interval=s.monitor_poll_interval_seconds,
            max_attempts=s.monitor_max_attempts,
            scan_batch_size=s.monitor_scan_batch_size,
            batch_delay=s.monitor_batch_delay_seconds,
            log_chunk_size=s.monitor_log_chunk_size,
        )

    def build_registry(self, endpoint_factory: Optional[EndpointFactory] = None) -> Registry:
        """Registry with the configured assets, a read-only source and a signing destination."""
        if endpoint_factory is None:
            from .evm import create_endpoint

            endpoint_factory = create_endpoint

        s = self.settings
        source = endpoint_factory(s.source_chain, s.source_rpc_url, s.source_chain_id)
        destination = endpoint_factory(
            s.destination_chain,
            s.destination_rpc_url,
            s.destination_chain_id,
            private_key=s.private_key or None,
            receipt_timeout=s.receipt_timeout_seconds,
        )
        return Registry(self.asset_descriptors(), [source, destination])

