"""Settlement submitter - encode, estimate, price, sign, broadcast and confirm a settlement call."""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel
from web3 import Web3

from podsettle.errors import SubmissionError, SubmissionPhase
from podsettle.models import Outcome

log = structlog.get_logger(__name__)


class SettlementReceipt(BaseModel):
    bet_id: int
    tx_hash: str
    entry_point: str
    gas_limit: int
    gas_price: int
    block_number: int | None = None


def settlement_call(bet_id: int, outcome: Outcome | None) -> tuple[str, list[Any]]:
    """Contract entry point and arguments for an outcome. No change (or no outcome)
    uses settleBetNoChange; a direction uses settleBet with True for Pump."""
    if outcome is None or outcome is Outcome.NO_CHANGE:
        return "settleBetNoChange", [bet_id]
    return "settleBet", [bet_id, outcome is Outcome.PUMP]


def gas_with_margin(estimate: int, margin_pct: int = 10) -> int:
    """Estimate plus floor(estimate * margin)."""
    return estimate + (estimate * margin_pct) // 100


class SettlementSubmitter:
    """Submits settlement transactions with the dedicated settlement account.

    Blocking: every method talks to the RPC node synchronously, so callers on an
    event loop run submit() in a worker thread. Each phase failure is raised as
    SubmissionError carrying the phase; nothing is swallowed.
    """

    def __init__(
        self,
        w3: Web3,
        contract: Any,
        account: Any,
        *,
        gas_margin_pct: int = 10,
        receipt_timeout_sec: float = 120.0,
    ):
        self.w3 = w3
        self.contract = contract
        self.account = account
        self.gas_margin_pct = gas_margin_pct
        self.receipt_timeout_sec = receipt_timeout_sec
        self._chain_id: int | None = None

    def submit(self, bet_id: int, outcome: Outcome | None) -> SettlementReceipt:
        entry_point, args = settlement_call(bet_id, outcome)
        sender = self.account.address
        bound = log.bind(bet_id=bet_id, entry_point=entry_point, sender=sender)

        try:
            data = self.contract.encode_abi(entry_point, args=args)
            call = {"from": sender, "to": self.contract.address, "data": data}
            estimate = int(self.w3.eth.estimate_gas(call))
        except Exception as e:
            raise SubmissionError(bet_id, SubmissionPhase.ESTIMATION, e) from e
        gas_limit = gas_with_margin(estimate, self.gas_margin_pct)
        bound.info("gas_estimated", estimate=estimate, gas_limit=gas_limit)

        try:
            gas_price = int(self.w3.eth.gas_price)
        except Exception as e:
            raise SubmissionError(bet_id, SubmissionPhase.GAS_PRICE, e) from e

        try:
            nonce = self.w3.eth.get_transaction_count(sender, "pending")
            if self._chain_id is None:
                self._chain_id = int(self.w3.eth.chain_id)
        except Exception as e:
            raise SubmissionError(bet_id, SubmissionPhase.NONCE, e) from e

        tx = {
            **call,
            "gas": gas_limit,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": self._chain_id,
            "value": 0,
        }
        try:
            signed = self.account.sign_transaction(tx)
        except Exception as e:
            raise SubmissionError(bet_id, SubmissionPhase.SIGNING, e) from e

        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            raise SubmissionError(bet_id, SubmissionPhase.BROADCAST, e) from e
        tx_hex = Web3.to_hex(tx_hash)
        bound.info("settlement_broadcast", tx_hash=tx_hex, gas_price=gas_price, nonce=nonce)

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout_sec)
        except Exception as e:
            raise SubmissionError(bet_id, SubmissionPhase.CONFIRMATION, e) from e
        if receipt["status"] != 1:
            raise SubmissionError(bet_id, SubmissionPhase.CONFIRMATION, f"transaction {tx_hex} reverted")

        return SettlementReceipt(
            bet_id=bet_id,
            tx_hash=tx_hex,
            entry_point=entry_point,
            gas_limit=gas_limit,
            gas_price=gas_price,
            block_number=receipt.get("blockNumber"),
        )
