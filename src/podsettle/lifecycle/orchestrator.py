"""Bet lifecycle orchestrator - timers, sampling, outcome and single settlement per bet."""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import structlog

from podsettle.chain.settlement import SettlementReceipt
from podsettle.errors import StoreWriteFailure, SubmissionError
from podsettle.lifecycle.outcome import compute_outcome
from podsettle.lifecycle.retry import RetryPolicy
from podsettle.models import Bet, BetInitialized, Outcome, SampleKind
from podsettle.storage.bets import BetStore

log = structlog.get_logger(__name__)

T = TypeVar("T")


class PriceSource(Protocol):
    async def fetch_price(self, token_address: str) -> Decimal | None: ...


class Submitter(Protocol):
    def submit(self, bet_id: int, outcome: Outcome | None) -> SettlementReceipt: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BetOrchestrator:
    """Drives each bet from creation to settlement.

    Two timers per bet fire the initial and final samples at the due times stored
    on the record, so recover() can re-arm them after a restart. All transitions
    of one bet run under that bet's lock; the store's settlement claim is the
    compare-and-set that keeps a bet from being submitted twice. Timers are never
    cancelled individually: a timer whose step is already done is a no-op.
    """

    def __init__(
        self,
        store: BetStore,
        oracle: PriceSource,
        submitter: Submitter,
        *,
        initial_delay_sec: float = 300.0,
        final_delay_sec: float = 660.0,
        sample_retry: RetryPolicy | None = None,
        store_retry: RetryPolicy | None = None,
        no_change_threshold: Decimal = Decimal(0),
        clock: Callable[[], datetime] = _utcnow,
    ):
        if initial_delay_sec >= final_delay_sec:
            raise ValueError("initial sample must be scheduled before the final sample")
        self.store = store
        self.oracle = oracle
        self.submitter = submitter
        self.initial_delay = timedelta(seconds=initial_delay_sec)
        self.final_delay = timedelta(seconds=final_delay_sec)
        self.sample_retry = sample_retry or RetryPolicy()
        self.store_retry = store_retry or RetryPolicy(max_attempts=3, base_delay_sec=0.5, max_delay_sec=5.0)
        self.no_change_threshold = no_change_threshold
        self._clock = clock
        # A bet's lock lives only while some step holds or waits on it.
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()
        self._timers: dict[tuple[int, SampleKind], asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    # --- scheduling ---

    def _lock_for(self, bet_id: int) -> asyncio.Lock:
        lock = self._locks.get(bet_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bet_id] = lock
        return lock

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _arm(self, bet: Bet, kind: SampleKind) -> bool:
        """Start the timer for one sample unless it is already pending."""
        key = (bet.bet_id, kind)
        if self._closed or key in self._timers:
            return False
        delay = (bet.due_at(kind) - self._clock()).total_seconds()
        task = self._spawn(self._fire(bet.bet_id, kind, delay), name=f"bet-{bet.bet_id}-{kind.value}")
        self._timers[key] = task
        task.add_done_callback(lambda _t, key=key: self._timers.pop(key, None))
        log.debug("sample_armed", bet_id=bet.bet_id, kind=kind.value, delay_sec=round(max(delay, 0), 1))
        return True

    async def _fire(self, bet_id: int, kind: SampleKind, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await self.sample(bet_id, kind)
        except Exception:
            log.exception("sample_step_failed", bet_id=bet_id, kind=kind.value)

    def pending_timers(self) -> list[tuple[int, SampleKind]]:
        return sorted(self._timers, key=lambda k: (k[0], k[1].value))

    async def drain(self) -> None:
        """Wait until every timer and spawned step has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding timers. Their steps run again from the store on next start."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("orchestrator_closed", cancelled=len(tasks))

    # --- store access ---

    async def _persist(self, operation: str, bet_id: int | None, fn: Callable[..., T], *args: Any) -> T:
        """Run a store write, retrying StoreWriteFailure per store_retry; the final failure
        is logged at error level and re-raised."""
        delays = self.store_retry.delays()
        while True:
            try:
                return fn(*args)
            except StoreWriteFailure as e:
                delay = next(delays, None)
                if delay is None:
                    log.error("store_write_failed", operation=operation, bet_id=bet_id, error=str(e.cause))
                    raise
                log.warning("store_write_retry", operation=operation, bet_id=bet_id, delay=delay, error=str(e.cause))
                await asyncio.sleep(delay)

    # --- lifecycle steps ---

    async def create_bet(self, event: BetInitialized) -> bool:
        """Persist a new bet and arm both samples. A known bet_id is a duplicate event
        and changes nothing."""
        now = self._clock()
        bet = Bet(
            bet_id=event.bet_id,
            finder=event.finder,
            token_address=event.token_address,
            start_time=now,
            total_bet_amount=Decimal(event.bet_amount),
            initial_due_at=now + self.initial_delay,
            final_due_at=now + self.final_delay,
        )
        async with self._lock_for(event.bet_id):
            created = await self._persist("create", event.bet_id, self.store.create, bet)
        if not created:
            log.debug("duplicate_bet_event", bet_id=event.bet_id)
            return False
        log.info(
            "bet_created",
            bet_id=bet.bet_id,
            token=bet.token_address,
            finder=bet.finder,
            amount=str(bet.total_bet_amount),
        )
        self._arm(bet, SampleKind.INITIAL)
        self._arm(bet, SampleKind.FINAL)
        return True

    async def _fetch_with_retry(self, bet: Bet, kind: SampleKind) -> Decimal | None:
        delays = self.sample_retry.delays()
        attempt = 1
        while True:
            price = await self.oracle.fetch_price(bet.token_address)
            if price is not None:
                return price
            delay = next(delays, None)
            if delay is None:
                log.warning("oracle_unavailable", bet_id=bet.bet_id, kind=kind.value, attempts=attempt)
                return None
            log.info("sample_retry", bet_id=bet.bet_id, kind=kind.value, attempt=attempt, delay=delay)
            await asyncio.sleep(delay)
            attempt += 1

    async def sample(self, bet_id: int, kind: SampleKind) -> Decimal | None:
        """Record one price sample; the final sample continues into outcome and settlement.
        Returns the recorded price, or None when nothing was recorded."""
        if kind is SampleKind.FINAL:
            # Overdue bets fire both timers at once; the initial sample goes first.
            initial = self._timers.get((bet_id, SampleKind.INITIAL))
            if initial is not None and initial is not asyncio.current_task() and not initial.done():
                await asyncio.wait({initial})

        async with self._lock_for(bet_id):
            bet = self.store.get(bet_id)
            if bet is None:
                log.error("bet_not_found", bet_id=bet_id, kind=kind.value)
                return None
            if bet.settled or bet.price(kind) is not None:
                log.debug("sample_noop", bet_id=bet_id, kind=kind.value, state=bet.state.value)
                return None
            if kind is SampleKind.FINAL and bet.initial_price is None:
                log.error("initial_price_missing", bet_id=bet_id)
                return None

            price = await self._fetch_with_retry(bet, kind)
            if price is None:
                return None
            written = await self._persist(
                f"set {kind.price_field}", bet_id, self.store.set_field, bet_id, kind.price_field, price
            )
            if not written:
                log.warning("sample_discarded", bet_id=bet_id, kind=kind.value)
                return None
            log.info("price_sampled", bet_id=bet_id, kind=kind.value, price_usd=str(price))

            if kind is SampleKind.FINAL:
                await self._compute_outcome_locked(bet_id)
                await self._settle_locked(bet_id)
            return price

    async def _compute_outcome_locked(self, bet_id: int) -> Outcome | None:
        bet = self.store.get(bet_id)
        if bet is None or bet.initial_price is None or bet.final_price is None:
            return None
        if bet.outcome is not None:
            return bet.outcome
        outcome = compute_outcome(bet.initial_price, bet.final_price, self.no_change_threshold)
        await self._persist("set outcome", bet_id, self.store.set_field, bet_id, "outcome", outcome)
        log.info(
            "outcome_computed",
            bet_id=bet_id,
            outcome=outcome.value,
            initial=str(bet.initial_price),
            final=str(bet.final_price),
        )
        return outcome

    async def compute_outcome(self, bet_id: int) -> Outcome | None:
        """Compute (once) and persist the outcome of a fully sampled bet, then settle it."""
        async with self._lock_for(bet_id):
            outcome = await self._compute_outcome_locked(bet_id)
            if outcome is not None:
                await self._settle_locked(bet_id)
            return outcome

    async def _settle_locked(self, bet_id: int) -> bool:
        bet = self.store.get(bet_id)
        if bet is None:
            log.error("bet_not_found", bet_id=bet_id, step="settle")
            return False
        if bet.settled:
            log.debug("settle_noop_already_settled", bet_id=bet_id)
            return False
        if bet.outcome is None:
            log.warning("settle_without_outcome", bet_id=bet_id, state=bet.state.value)
            return False
        claimed = await self._persist("claim settlement", bet_id, self.store.claim_settlement, bet_id)
        if not claimed:
            log.info("settle_noop_already_claimed", bet_id=bet_id)
            return False

        try:
            receipt = await asyncio.to_thread(self.submitter.submit, bet_id, bet.outcome)
        except SubmissionError as e:
            # Left in OutcomeComputed; resubmitted by an operator or on restart.
            log.error(
                "settlement_failed",
                bet_id=bet_id,
                phase=e.phase.value,
                outcome=bet.outcome.value,
                error=str(e.cause),
            )
            await self._persist("release claim", bet_id, self.store.release_claim, bet_id, e.describe())
            return False
        except BaseException:
            await self._persist("release claim", bet_id, self.store.release_claim, bet_id, "unexpected error")
            raise

        await self._persist("mark settled", bet_id, self.store.mark_settled, bet_id, receipt.tx_hash)
        log.info(
            "bet_settled",
            bet_id=bet_id,
            outcome=bet.outcome.value,
            entry_point=receipt.entry_point,
            tx_hash=receipt.tx_hash,
            block=receipt.block_number,
        )
        return True

    async def settle(self, bet_id: int) -> bool:
        """Submit the settlement of a bet with a computed outcome. True only when this
        call settled it; settled or already-claimed bets are a no-op."""
        async with self._lock_for(bet_id):
            return await self._settle_locked(bet_id)

    async def resubmit(self, bet_id: int) -> bool:
        """Operator retry of a bet left in OutcomeComputed by a failed submission."""
        async with self._lock_for(bet_id):
            bet = self.store.get(bet_id)
            if bet is None:
                log.error("bet_not_found", bet_id=bet_id, step="resubmit")
                return False
            log.info("settlement_resubmit", bet_id=bet_id, previous_error=bet.settlement_error)
            if bet.outcome is None:
                await self._compute_outcome_locked(bet_id)
            return await self._settle_locked(bet_id)

    async def _resume_settlement(self, bet_id: int) -> None:
        try:
            await self.compute_outcome(bet_id)
        except Exception:
            log.exception("settlement_resume_failed", bet_id=bet_id)

    async def recover(self) -> dict[str, int]:
        """Rebuild in-memory work from the store at startup: clear claims of a dead
        process, re-arm sample timers from their stored due times (overdue ones fire
        immediately) and push fully sampled bets through outcome and settlement."""
        released = self.store.release_stale_claims()
        awaiting = self.store.list_awaiting_samples()
        armed = 0
        for bet in awaiting:
            if bet.initial_price is None:
                armed += self._arm(bet, SampleKind.INITIAL)
            armed += self._arm(bet, SampleKind.FINAL)
        pending = self.store.list_pending_settlement()
        for bet in pending:
            self._spawn(self._resume_settlement(bet.bet_id), name=f"bet-{bet.bet_id}-resume")
        stats = {
            "released_claims": released,
            "awaiting_samples": len(awaiting),
            "timers_armed": armed,
            "pending_settlement": len(pending),
        }
        log.info("recovery_complete", **stats)
        return stats
