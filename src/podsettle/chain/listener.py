"""BetInitialized log subscription - connect, subscribe, back-fill, receive, reconnect."""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable

import structlog
import websockets
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict

from podsettle.chain.client import BET_INITIALIZED, event_topic
from podsettle.models import BetInitialized

log = structlog.get_logger(__name__)

BetHandler = Callable[[BetInitialized], Awaitable[Any]]


def _parse_message(raw: str | bytes) -> dict[str, Any] | None:
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return msg if isinstance(msg, dict) else None


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def format_raw_log(raw: dict[str, Any]) -> AttributeDict:
    """Shape a JSON-RPC log object the way web3 returns logs from get_logs."""
    return AttributeDict(
        {
            "address": Web3.to_checksum_address(raw["address"]),
            "topics": [HexBytes(t) for t in raw.get("topics", [])],
            "data": HexBytes(raw.get("data", "0x")),
            "blockNumber": _to_int(raw.get("blockNumber")),
            "blockHash": HexBytes(raw["blockHash"]) if raw.get("blockHash") else None,
            "transactionHash": HexBytes(raw["transactionHash"]) if raw.get("transactionHash") else None,
            "transactionIndex": _to_int(raw.get("transactionIndex")),
            "logIndex": _to_int(raw.get("logIndex")),
            "removed": bool(raw.get("removed", False)),
        }
    )


def event_from_log(decoded: Any) -> BetInitialized:
    """Build a BetInitialized from web3 EventData."""
    args = decoded["args"]
    tx_hash = decoded.get("transactionHash")
    return BetInitialized(
        bet_id=int(args["betId"]),
        finder=str(args["finder"]),
        token_address=str(args["tokenAddress"]),
        bet_amount=int(args["betAmount"]),
        block_number=decoded.get("blockNumber"),
        tx_hash=Web3.to_hex(tx_hash) if tx_hash is not None else None,
        log_index=decoded.get("logIndex"),
    )


class ChainEventListener:
    """Delivers every BetInitialized log to on_bet at least once.

    Every connect re-establishes the live subscription first, then fetches logs
    from (last seen block - replay_blocks) to the chain head over HTTP so nothing
    emitted while disconnected is lost. The first connect anchors last_block at
    the head even when no bet has been seen yet. Duplicates are expected; on_bet
    must be idempotent.
    """

    def __init__(
        self,
        ws_url: str,
        contract: Any,
        abi: list[dict[str, Any]],
        on_bet: BetHandler,
        *,
        replay_blocks: int = 12,
        reconnect_base_delay_sec: float = 1.0,
        reconnect_max_delay_sec: float = 60.0,
        reconnect_max_retries: int = 0,
    ):
        self.ws_url = ws_url
        self.contract = contract
        self.topic = event_topic(abi, BET_INITIALIZED)
        self.on_bet = on_bet
        self.replay_blocks = replay_blocks
        self.reconnect_base_delay_sec = reconnect_base_delay_sec
        self.reconnect_max_delay_sec = reconnect_max_delay_sec
        self.reconnect_max_retries = reconnect_max_retries
        self.last_block: int | None = None
        self._ids = itertools.count(1)
        self._event_count = 0

    def _subscribe_request(self) -> str:
        return json.dumps(
            {
                "jsonrpc": "2.0",
                "id": next(self._ids),
                "method": "eth_subscribe",
                "params": ["logs", {"address": self.contract.address, "topics": [self.topic]}],
            }
        )

    def decode(self, raw_log: dict[str, Any]) -> BetInitialized:
        decoded = self.contract.events.BetInitialized().process_log(format_raw_log(raw_log))
        return event_from_log(decoded)

    def _chain_head(self) -> int:
        return self.contract.w3.eth.block_number

    def _fetch_logs(self, from_block: int, to_block: int) -> list[BetInitialized]:
        logs = self.contract.events.BetInitialized().get_logs(from_block=from_block, to_block=to_block)
        return [event_from_log(entry) for entry in logs]

    async def _deliver(self, event: BetInitialized) -> None:
        self._event_count += 1
        if event.block_number is not None:
            self.last_block = max(self.last_block or 0, event.block_number)
        try:
            await self.on_bet(event)
        except Exception:
            log.exception("bet_event_handler_failed", bet_id=event.bet_id)

    async def handle_message(self, msg: dict[str, Any]) -> None:
        """Process one JSON-RPC frame: subscription acks, errors and log notifications."""
        if msg.get("method") != "eth_subscription":
            if "error" in msg:
                raise ConnectionError(f"subscription rejected: {msg['error']}")
            if "result" in msg:
                log.info("chain_subscribed", subscription=msg["result"])
            return
        raw_log = (msg.get("params") or {}).get("result")
        if not isinstance(raw_log, dict):
            log.warning("chain_log_malformed", payload=str(msg)[:200])
            return
        if raw_log.get("removed"):
            log.warning("chain_log_removed", tx_hash=raw_log.get("transactionHash"))
            return
        try:
            event = self.decode(raw_log)
        except Exception as e:
            log.warning("chain_log_decode_failed", error=str(e), tx_hash=raw_log.get("transactionHash"))
            return
        log.info("bet_event_received", bet_id=event.bet_id, block=event.block_number)
        await self._deliver(event)

    async def backfill(self) -> int:
        """Re-deliver logs from the replay window behind the last seen block up to the
        chain head, then move last_block to that head. The first call anchors the
        window at the head, so every later reconnect has a range to replay.

        Raises ConnectionError when the node cannot be queried; run() then reconnects
        and tries again with last_block unchanged.
        """
        try:
            head = await asyncio.to_thread(self._chain_head)
            anchor = self.last_block if self.last_block is not None else head
            from_block = max(anchor - self.replay_blocks, 0)
            events = await asyncio.to_thread(self._fetch_logs, from_block, head)
        except Exception as e:
            log.warning("chain_backfill_failed", last_block=self.last_block, error=str(e))
            raise ConnectionError("chain backfill failed") from e
        for event in events:
            await self._deliver(event)
        self.last_block = max(self.last_block or 0, head)
        log.info("chain_backfilled", from_block=from_block, to_block=head, events=len(events))
        return len(events)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Run the subscription until stop_event is set or reconnect retries are exhausted."""
        stop = stop_event or asyncio.Event()
        delay = self.reconnect_base_delay_sec
        retries = 0

        while not stop.is_set():
            try:
                async with websockets.connect(
                    self.ws_url,
                    ping_interval=20,
                    ping_timeout=20,
                    close_timeout=5,
                ) as ws:
                    delay = self.reconnect_base_delay_sec
                    retries = 0
                    log.info("chain_ws_connected", url=self.ws_url, contract=self.contract.address)

                    await ws.send(self._subscribe_request())
                    await self.backfill()

                    while not stop.is_set():
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=30.0)
                        except asyncio.TimeoutError:
                            continue
                        msg = _parse_message(raw)
                        if msg is None:
                            log.warning("chain_message_unparseable", raw=str(raw)[:200])
                            continue
                        await self.handle_message(msg)
            except asyncio.CancelledError:
                log.info("chain_ws_cancelled")
                break
            except Exception as e:
                log.warning("chain_ws_error", error=str(e), delay=delay)
                if self.reconnect_max_retries and retries >= self.reconnect_max_retries:
                    log.error("chain_ws_max_retries_reached")
                    break
                retries += 1
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.reconnect_max_delay_sec)

        log.info("chain_listener_stopped", events=self._event_count)
