from pydantic import BaseModel, Field, field_validator
from typing import Optional, Union
from datetime import datetime
import re


_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


def normalize_address(value: str) -> str:
    """Lowercase an address and check it is 20 bytes of hex."""
    if not isinstance(value, str):
        raise ValueError("address must be a string")
    normalized = value.lower()
    if not _ADDRESS_RE.match(normalized):
        raise ValueError(f"invalid address: {value}")
    return normalized


class FeeCollectedEvent(BaseModel):
    """FeesCollected event emitted by the FeeCollector contract."""

    # Event identifiers - (chain_id, block_number, tx_hash, log_index) is unique
    chain_id: int = Field(..., description="Blockchain chain ID")
    block_number: int = Field(..., ge=0, description="Block number")
    tx_hash: str = Field(..., description="Transaction hash")
    log_index: int = Field(..., ge=0, description="Log index in block")

    # Block information
    block_timestamp: int = Field(..., ge=0, description="Block timestamp (Unix seconds)")

    # Fee details
    token: str = Field(..., description="Address of the token fees were collected in")
    integrator: str = Field(..., description="Integrator address the fees belong to")
    integrator_fee: str = Field(..., description="Integrator fee, uint256 stored as string to avoid 64-bit limits")
    lifi_fee: str = Field(..., description="LI.FI fee, uint256 stored as string to avoid 64-bit limits")

    # Repository-added tracking fields
    created_at: Optional[datetime] = Field(None, description="Database creation timestamp")

    @field_validator("token", "integrator", mode="before")
    @classmethod
    def _normalize_address(cls, value):
        return normalize_address(value)

    @field_validator("tx_hash", mode="before")
    @classmethod
    def _normalize_tx_hash(cls, value):
        if not isinstance(value, str) or not _TX_HASH_RE.match(value.lower()):
            raise ValueError(f"invalid transaction hash: {value}")
        return value.lower()

    @field_validator("integrator_fee", "lifi_fee", mode="before")
    @classmethod
    def _amount_to_string(cls, value: Union[int, str]) -> str:
        # bool is an int subclass, floats lose precision: reject both
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ValueError("amount must be an int or a decimal string")
        if isinstance(value, int):
            if value < 0:
                raise ValueError("amount must be unsigned")
            return str(value)
        if not (value.isascii() and value.isdigit()):
            raise ValueError(f"amount must be a non-negative decimal string, got {value!r}")
        return str(int(value))

    @property
    def key(self) -> tuple:
        """Natural key of the event."""
        return (self.chain_id, self.block_number, self.tx_hash, self.log_index)

    def to_document(self) -> dict:
        """Document shape persisted by the repositories."""
        return self.model_dump(exclude={"created_at"})


class IndexerState(BaseModel):
    """Watermark of a chain: every block up to and including
    ``last_processed_block`` has been durably processed."""

    chain_id: int = Field(..., description="Blockchain chain ID")
    last_processed_block: int = Field(..., description="Last successfully processed block")
    updated_at: Optional[datetime] = Field(None, description="Last update time")


class SkippedRange(BaseModel):
    """Block range abandoned by the circuit breaker, awaiting manual backfill."""

    chain_id: int = Field(..., description="Blockchain chain ID")
    from_block: int = Field(..., description="First block of the skipped range")
    to_block: int = Field(..., description="Last block of the skipped range")
    attempts: int = Field(..., description="Attempts made before giving up")
    last_error: Optional[str] = Field(None, description="Error of the final attempt")
    detected_at: datetime = Field(default_factory=datetime.utcnow, description="When the range was skipped")
    resolved: bool = Field(default=False, description="Whether a backfill has covered the range")
    resolved_at: Optional[datetime] = Field(None, description="When the range was backfilled")
