"""
Pydantic models for inbound transfer notifications.

Field aliases follow the Alchemy address-activity webhook, e.g.:

    {
      "webhookId": "wh_...",
      "id": "whevt_...",
      "event": {
        "network": "ARB_MAINNET",
        "activity": [
          {"fromAddress": "0x...", "toAddress": "0x...", "value": 0.005,
           "asset": "WBTC", "category": "token", "hash": "0x...",
           "rawContract": {"address": "0x...", "decimals": 8, "rawValue": "0x..."}}
        ]
      }
    }
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .amounts import normalize_decimal
from .errors import InvalidAmount
from .registry import NATIVE_MARKER


class ContractMeta(BaseModel):
    """Token contract details attached to a token transfer."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    address: str
    decimals: Optional[int] = None
    raw_value: Optional[str] = Field(None, alias="rawValue")

    @field_validator("raw_value", mode="before")
    @classmethod
    def _raw_value_as_text(cls, v: Any) -> Any:
        if isinstance(v, int):
            return str(v)
        return v

    def raw_integer_value(self) -> Optional[int]:
        """Raw transfer value in base units (hex or decimal text)."""
        if not self.raw_value:
            return None
        text = self.raw_value.strip().lower()
        try:
            return int(text, 16) if text.startswith("0x") else int(text)
        except ValueError:
            raise InvalidAmount(self.raw_value, "malformed raw value") from None


class InboundTransferEvent(BaseModel):
    """One observed transfer on the source chain."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_address: str = Field(..., alias="fromAddress")
    to_address: str = Field(..., alias="toAddress")
    amount: str = Field(..., alias="value", description="Decimal amount in source asset units")
    asset_hint: Optional[str] = Field(None, alias="asset")
    category: str = ""
    source_tx_id: str = Field(..., alias="hash")
    contract_meta: Optional[ContractMeta] = Field(None, alias="rawContract")
    block_timestamp: Optional[int] = Field(None, alias="blockTimestamp")

    @field_validator("amount", mode="before")
    @classmethod
    def _normalize_amount(cls, v: Any) -> Any:
        # Malformed amounts are kept verbatim so the dispatcher can reject
        # that one event instead of failing the whole batch.
        if v is None:
            return ""
        try:
            return normalize_decimal(v)
        except InvalidAmount:
            return str(v)

    @field_validator("contract_meta", mode="before")
    @classmethod
    def _drop_empty_contract(cls, v: Any) -> Any:
        # Native transfers come with rawContract.address = null
        if isinstance(v, dict) and not v.get("address"):
            return None
        return v

    @property
    def asset_key(self) -> str:
        """Registry key for this transfer's asset."""
        if self.contract_meta is not None:
            return self.contract_meta.address
        return NATIVE_MARKER


class NotificationBatch(BaseModel):
    """One webhook delivery."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    batch_id: str = Field(..., alias="webhookId")
    delivery_id: str = Field(..., alias="id")
    source_network: str = Field("", alias="network")
    created_at: Optional[str] = Field(None, alias="createdAt")
    events: list[InboundTransferEvent] = Field(default_factory=list, alias="activity")

    @classmethod
    def from_webhook(cls, payload: dict[str, Any]) -> "NotificationBatch":
        """Build a batch from the raw webhook body (activity nested under `event`)."""
        event = payload.get("event") or {}
        return cls.model_validate(
            {
                "webhookId": payload.get("webhookId", ""),
                "id": payload.get("id", ""),
                "createdAt": payload.get("createdAt"),
                "network": event.get("network", ""),
                "activity": event.get("activity") or [],
            }
        )
