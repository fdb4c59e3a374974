"""Pydantic schemas for API responses and OpenAPI docs."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from podsettle.models import Bet, BetState, Outcome


# --- Health ---
class HealthResponse(BaseModel):
    status: str = "ok"


# --- Error (consistent shape for 4xx/5xx) ---
class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Human-readable message")
    code: str | None = Field(None, description="Machine-readable code, e.g. not_found")


# --- Bets ---
class BetView(BaseModel):
    """Read projection of a stored bet, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bet_id: int
    finder: str
    token_address: str
    start_time: datetime
    total_bet_amount: Decimal
    initial_price: Decimal | None = None
    final_price: Decimal | None = None
    settled: bool
    outcome: Outcome | None = None
    state: BetState
    settlement_tx: str | None = None

    @classmethod
    def from_bet(cls, bet: Bet) -> BetView:
        return cls(
            bet_id=bet.bet_id,
            finder=bet.finder,
            token_address=bet.token_address,
            start_time=bet.start_time,
            total_bet_amount=bet.total_bet_amount,
            initial_price=bet.initial_price,
            final_price=bet.final_price,
            settled=bet.settled,
            outcome=bet.outcome,
            state=bet.state,
            settlement_tx=bet.settlement_tx,
        )
