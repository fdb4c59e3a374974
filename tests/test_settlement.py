"""Settlement submitter tests against a fake RPC node."""

import pytest
from eth_account import Account
from web3 import Web3

from podsettle.chain.client import build_contract, load_abi
from podsettle.chain.settlement import SettlementSubmitter, gas_with_margin, settlement_call
from podsettle.errors import SubmissionError, SubmissionPhase
from podsettle.models import Outcome

CONTRACT = "0x" + "11" * 20


class FakeEth:
    def __init__(self, fail=None, status=1):
        self.fail = fail
        self.status = status
        self.sent = []
        self.estimated = []

    def _maybe_fail(self, phase):
        if self.fail == phase:
            raise ValueError(f"{phase} exploded")

    def estimate_gas(self, call):
        self._maybe_fail("estimate")
        self.estimated.append(call)
        return 50_000

    @property
    def gas_price(self):
        self._maybe_fail("gas_price")
        return 2_000_000_000

    def get_transaction_count(self, address, block):
        self._maybe_fail("nonce")
        return 7

    @property
    def chain_id(self):
        return 31337

    def send_raw_transaction(self, raw):
        self._maybe_fail("send")
        self.sent.append(raw)
        return b"\xab" * 32

    def wait_for_transaction_receipt(self, tx_hash, timeout):
        self._maybe_fail("receipt")
        return {"status": self.status, "blockNumber": 123}


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth


@pytest.fixture
def contract():
    w3 = Web3(Web3.HTTPProvider("http://127.0.0.1:8545"))
    return build_contract(w3, CONTRACT, load_abi())


def _submitter(contract, eth):
    return SettlementSubmitter(FakeWeb3(eth), contract, Account.create(), gas_margin_pct=10, receipt_timeout_sec=1)


def test_settlement_call_selection():
    assert settlement_call(5, Outcome.PUMP) == ("settleBet", [5, True])
    assert settlement_call(5, Outcome.DUMP) == ("settleBet", [5, False])
    assert settlement_call(5, Outcome.NO_CHANGE) == ("settleBetNoChange", [5])
    assert settlement_call(5, None) == ("settleBetNoChange", [5])


def test_gas_margin_is_floor_of_ten_percent():
    assert gas_with_margin(50_000) == 55_000
    assert gas_with_margin(21_005) == 23_105
    assert gas_with_margin(9) == 9


def test_submit_signs_and_broadcasts(contract):
    eth = FakeEth()
    receipt = _submitter(contract, eth).submit(12, Outcome.PUMP)
    assert receipt.entry_point == "settleBet"
    assert receipt.gas_limit == 55_000
    assert receipt.gas_price == 2_000_000_000
    assert receipt.tx_hash == "0x" + "ab" * 32
    assert receipt.block_number == 123
    assert len(eth.sent) == 1
    assert eth.estimated[0]["to"] == Web3.to_checksum_address(CONTRACT)
    assert eth.estimated[0]["data"] == contract.encode_abi("settleBet", args=[12, True])


@pytest.mark.parametrize(
    "fail,phase",
    [
        ("estimate", SubmissionPhase.ESTIMATION),
        ("gas_price", SubmissionPhase.GAS_PRICE),
        ("nonce", SubmissionPhase.NONCE),
        ("send", SubmissionPhase.BROADCAST),
        ("receipt", SubmissionPhase.CONFIRMATION),
    ],
)
def test_each_phase_failure_is_reported(contract, fail, phase):
    eth = FakeEth(fail=fail)
    with pytest.raises(SubmissionError) as exc:
        _submitter(contract, eth).submit(3, Outcome.DUMP)
    assert exc.value.phase is phase
    assert exc.value.bet_id == 3
    assert exc.value.describe().startswith(phase.value)


def test_signing_failure_is_reported(contract):
    class BrokenAccount:
        address = Account.create().address

        def sign_transaction(self, tx):
            raise ValueError("hsm offline")

    submitter = SettlementSubmitter(FakeWeb3(FakeEth()), contract, BrokenAccount())
    with pytest.raises(SubmissionError) as exc:
        submitter.submit(1, Outcome.NO_CHANGE)
    assert exc.value.phase is SubmissionPhase.SIGNING


def test_reverted_receipt_is_a_confirmation_failure(contract):
    with pytest.raises(SubmissionError) as exc:
        _submitter(contract, FakeEth(status=0)).submit(1, Outcome.PUMP)
    assert exc.value.phase is SubmissionPhase.CONFIRMATION
    assert "reverted" in str(exc.value)
