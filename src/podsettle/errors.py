"""Error taxonomy for settlement, storage and lifecycle failures."""

from __future__ import annotations

from enum import Enum


class PodSettleError(Exception):
    """Base class for podsettle errors."""


class SubmissionPhase(str, Enum):
    """Step of the settlement submission that failed."""

    ESTIMATION = "estimation"
    GAS_PRICE = "gas_price"
    NONCE = "nonce"
    SIGNING = "signing"
    BROADCAST = "broadcast"
    CONFIRMATION = "confirmation"


class SubmissionError(PodSettleError):
    """A settlement transaction could not be submitted or confirmed."""

    def __init__(self, bet_id: int, phase: SubmissionPhase, cause: BaseException | str):
        self.bet_id = bet_id
        self.phase = phase
        self.cause = cause
        super().__init__(f"bet {bet_id}: settlement failed during {phase.value}: {cause}")

    def describe(self) -> str:
        """Short form persisted on the bet record: '<phase>: <cause>'."""
        return f"{self.phase.value}: {self.cause}"


class StoreWriteFailure(PodSettleError):
    """The bet store rejected or failed a write; the checkpoint may be stale."""

    def __init__(self, operation: str, bet_id: int | None, cause: BaseException):
        self.operation = operation
        self.bet_id = bet_id
        self.cause = cause
        super().__init__(f"store {operation} failed for bet {bet_id}: {cause}")


class ChainConfigError(PodSettleError):
    """Chain collaborators cannot be built (missing key, address or ABI)."""
