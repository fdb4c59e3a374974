"""Service assembly - build every collaborator once from settings and run them together."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from podsettle.chain.client import build_contract, build_web3, load_abi, load_account
from podsettle.chain.listener import ChainEventListener
from podsettle.chain.settlement import SettlementSubmitter
from podsettle.config import Settings
from podsettle.lifecycle.orchestrator import BetOrchestrator
from podsettle.lifecycle.retry import RetryPolicy
from podsettle.oracle import PriceOracle
from podsettle.storage.bets import BetStore

log = structlog.get_logger(__name__)


def build_orchestrator(settings: Settings, store: BetStore) -> tuple[BetOrchestrator, PriceOracle, Any, list]:
    """Orchestrator wired to a real oracle and submitter. Also returns the oracle
    (to close), the contract and its ABI (for the listener)."""
    abi = load_abi(settings.abi_path)
    w3 = build_web3(settings.rpc_url, timeout=settings.rpc_timeout_sec)
    contract = build_contract(w3, settings.contract_address, abi)
    account = load_account(settings.settlement_key)
    submitter = SettlementSubmitter(
        w3,
        contract,
        account,
        gas_margin_pct=settings.gas_margin_pct,
        receipt_timeout_sec=settings.receipt_timeout_sec,
    )
    oracle = PriceOracle(settings.oracle_base_url, timeout=settings.oracle_timeout_sec)
    orchestrator = BetOrchestrator(
        store,
        oracle,
        submitter,
        initial_delay_sec=settings.initial_delay_sec,
        final_delay_sec=settings.final_delay_sec,
        sample_retry=RetryPolicy(
            max_attempts=settings.sample_max_attempts,
            base_delay_sec=settings.sample_retry_base_sec,
            max_delay_sec=settings.sample_retry_max_sec,
        ),
        no_change_threshold=settings.no_change_threshold,
    )
    log.info(
        "orchestrator_built",
        contract=contract.address,
        settlement_account=account.address,
        initial_delay_sec=settings.initial_delay_sec,
        final_delay_sec=settings.final_delay_sec,
    )
    return orchestrator, oracle, contract, abi


class SettlementService:
    """Store + orchestrator + chain listener running in one event loop."""

    def __init__(self, settings: Settings, store: BetStore):
        self.settings = settings
        self.store = store
        self.orchestrator, self._oracle, contract, abi = build_orchestrator(settings, store)
        self.listener = ChainEventListener(
            settings.ws_url,
            contract,
            abi,
            self.orchestrator.create_bet,
            replay_blocks=settings.replay_blocks,
            reconnect_base_delay_sec=settings.reconnect_base_delay_sec,
            reconnect_max_delay_sec=settings.reconnect_max_delay_sec,
            reconnect_max_retries=settings.reconnect_max_retries,
        )
        self._stop = asyncio.Event()
        self._listener_task: asyncio.Task | None = None

    async def start(self) -> None:
        await self.orchestrator.recover()
        self._listener_task = asyncio.create_task(self.listener.run(stop_event=self._stop))
        log.info("settlement_service_started")

    async def stop(self) -> None:
        self._stop.set()
        if self._listener_task is not None:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
        await self.orchestrator.close()
        await self._oracle.aclose()
        log.info("settlement_service_stopped")
