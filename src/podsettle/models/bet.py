"""Bet, Outcome, BetState - the settlement record and its derived lifecycle state."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class Outcome(str, Enum):
    """Result of comparing the initial and final price samples."""

    PUMP = "Pump"
    DUMP = "Dump"
    NO_CHANGE = "No Change"


class SampleKind(str, Enum):
    """Which of the two scheduled price samples."""

    INITIAL = "initial"
    FINAL = "final"

    @property
    def price_field(self) -> str:
        return f"{self.value}_price"

    @property
    def due_field(self) -> str:
        return f"{self.value}_due_at"


class BetState(str, Enum):
    AWAITING_INITIAL_SAMPLE = "AwaitingInitialSample"
    AWAITING_FINAL_SAMPLE = "AwaitingFinalSample"
    SAMPLED = "Sampled"  # final price stored, outcome not yet persisted
    OUTCOME_COMPUTED = "OutcomeComputed"
    SETTLING = "Settling"
    SETTLED = "Settled"


class Bet(BaseModel):
    """Stored bet record. Identity fields and due times are write-once."""

    bet_id: int = Field(..., ge=0)
    finder: str
    token_address: str
    start_time: datetime
    total_bet_amount: Decimal = Field(..., ge=0, description="Wager in the token's base units")
    initial_due_at: datetime
    final_due_at: datetime
    initial_price: Decimal | None = None
    final_price: Decimal | None = None
    outcome: Outcome | None = None
    settled: bool = False
    settling: bool = False
    settlement_tx: str | None = None
    settlement_error: str | None = None

    @property
    def state(self) -> BetState:
        if self.settled:
            return BetState.SETTLED
        if self.settling:
            return BetState.SETTLING
        if self.outcome is not None:
            return BetState.OUTCOME_COMPUTED
        if self.final_price is not None:
            return BetState.SAMPLED
        if self.initial_price is not None:
            return BetState.AWAITING_FINAL_SAMPLE
        return BetState.AWAITING_INITIAL_SAMPLE

    def price(self, kind: SampleKind) -> Decimal | None:
        return self.initial_price if kind is SampleKind.INITIAL else self.final_price

    def due_at(self, kind: SampleKind) -> datetime:
        return self.initial_due_at if kind is SampleKind.INITIAL else self.final_due_at
