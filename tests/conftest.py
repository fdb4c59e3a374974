"""Shared fixtures: temporary DuckDB bet store and fake chain/oracle collaborators."""

import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from podsettle.chain.settlement import SettlementReceipt, settlement_call
from podsettle.errors import SubmissionError
from podsettle.models import Bet
from podsettle.storage.bets import BetStore


@pytest.fixture
def temp_store():
    tmp = tempfile.mkdtemp()
    path = Path(tmp) / "test.duckdb"
    store = BetStore.open(path)
    yield store
    store.close()
    for f in Path(tmp).iterdir():
        f.unlink()
    Path(tmp).rmdir()


def make_bet(bet_id=1, start_time=None, initial_delay=300, final_delay=660, **fields):
    start = start_time or datetime.now(timezone.utc).replace(microsecond=0)
    return Bet(
        bet_id=bet_id,
        finder="0x00000000000000000000000000000000000000f1",
        token_address="0x00000000000000000000000000000000000000a1",
        start_time=start,
        total_bet_amount=Decimal(10**18),
        initial_due_at=start + timedelta(seconds=initial_delay),
        final_due_at=start + timedelta(seconds=final_delay),
        **fields,
    )


class FakeOracle:
    """Returns queued prices in order; None entries simulate an unavailable feed."""

    def __init__(self, prices=()):
        self.prices = list(prices)
        self.calls = []

    async def fetch_price(self, token_address):
        self.calls.append(token_address)
        if not self.prices:
            return None
        return self.prices.pop(0)


class FakeSubmitter:
    """Records submissions; optionally fails with a SubmissionError or sleeps to widen races."""

    def __init__(self, fail_phase=None, delay=0.0):
        self.fail_phase = fail_phase
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def submit(self, bet_id, outcome):
        with self._lock:
            self.calls.append((bet_id, outcome))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_phase is not None:
            raise SubmissionError(bet_id, self.fail_phase, "rpc said no")
        entry_point, _args = settlement_call(bet_id, outcome)
        return SettlementReceipt(
            bet_id=bet_id,
            tx_hash="0x" + f"{bet_id:064x}",
            entry_point=entry_point,
            gas_limit=55_000,
            gas_price=1_000_000_000,
            block_number=100,
        )
