"""Decoded on-chain events."""

from __future__ import annotations

from pydantic import BaseModel, Field


class BetInitialized(BaseModel):
    """Payload of the contract's BetInitialized event."""

    bet_id: int = Field(..., ge=0)
    finder: str
    token_address: str
    bet_amount: int = Field(..., ge=0)
    block_number: int | None = None
    tx_hash: str | None = None
    log_index: int | None = None
