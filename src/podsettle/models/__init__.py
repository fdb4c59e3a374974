"""Canonical schema (Pydantic) - Bet, BetInitialized, Outcome."""

from podsettle.models.bet import Bet, BetState, Outcome, SampleKind
from podsettle.models.events import BetInitialized

__all__ = [
    "Bet",
    "BetState",
    "BetInitialized",
    "Outcome",
    "SampleKind",
]
