"""Chain event listener tests: log decoding, subscription frames, back-fill."""

import pytest
from web3 import Web3

from podsettle.chain.client import build_contract, event_signature, event_topic, load_abi
from podsettle.chain.listener import ChainEventListener

CONTRACT = "0x" + "22" * 20
FINDER = "0x" + "f1" * 20
TOKEN = "0x" + "a1" * 20

W3 = Web3(Web3.HTTPProvider("http://127.0.0.1:8545"))


@pytest.fixture
def abi():
    return load_abi()


@pytest.fixture
def contract(abi):
    return build_contract(W3, CONTRACT, abi)


def _raw_log(abi, bet_id, block=100, log_index=0):
    data = W3.codec.encode(
        ["uint256", "address", "address", "uint256"],
        [bet_id, Web3.to_checksum_address(FINDER), Web3.to_checksum_address(TOKEN), 10**18],
    )
    return {
        "address": CONTRACT,
        "topics": [event_topic(abi)],
        "data": Web3.to_hex(data),
        "blockNumber": hex(block),
        "blockHash": "0x" + "01" * 32,
        "transactionHash": "0x" + "02" * 32,
        "transactionIndex": "0x0",
        "logIndex": hex(log_index),
        "removed": False,
    }


def _notification(raw_log):
    return {"jsonrpc": "2.0", "method": "eth_subscription", "params": {"subscription": "0x1", "result": raw_log}}


def _listener(contract, abi, received, **kwargs):
    async def on_bet(event):
        received.append(event)

    return ChainEventListener("ws://127.0.0.1:8546", contract, abi, on_bet, **kwargs)


def test_event_signature_from_abi(abi):
    assert event_signature(abi) == "BetInitialized(uint256,address,address,uint256)"
    assert event_topic(abi) == Web3.to_hex(Web3.keccak(text="BetInitialized(uint256,address,address,uint256)"))


@pytest.mark.asyncio
async def test_log_notification_is_decoded_and_delivered(contract, abi):
    received = []
    listener = _listener(contract, abi, received)
    await listener.handle_message(_notification(_raw_log(abi, 77, block=250)))
    assert len(received) == 1
    event = received[0]
    assert event.bet_id == 77
    assert event.finder == Web3.to_checksum_address(FINDER)
    assert event.token_address == Web3.to_checksum_address(TOKEN)
    assert event.bet_amount == 10**18
    assert event.block_number == 250
    assert listener.last_block == 250


@pytest.mark.asyncio
async def test_bad_log_is_skipped_without_stopping(contract, abi):
    received = []
    listener = _listener(contract, abi, received)
    broken = _raw_log(abi, 1)
    broken["data"] = "0x1234"
    await listener.handle_message(_notification(broken))
    removed = _raw_log(abi, 2)
    removed["removed"] = True
    await listener.handle_message(_notification(removed))
    await listener.handle_message({"jsonrpc": "2.0", "id": 1, "result": "0xsub"})
    await listener.handle_message(_notification(_raw_log(abi, 3)))
    assert [e.bet_id for e in received] == [3]


@pytest.mark.asyncio
async def test_subscription_error_forces_reconnect(contract, abi):
    listener = _listener(contract, abi, [])
    with pytest.raises(ConnectionError):
        await listener.handle_message({"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "nope"}})


@pytest.mark.asyncio
async def test_handler_failure_does_not_stop_delivery(contract, abi):
    seen = []

    async def on_bet(event):
        seen.append(event.bet_id)
        if event.bet_id == 1:
            raise RuntimeError("store down")

    listener = ChainEventListener("ws://127.0.0.1:8546", contract, abi, on_bet)
    await listener.handle_message(_notification(_raw_log(abi, 1)))
    await listener.handle_message(_notification(_raw_log(abi, 2)))
    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_backfill_replays_window_behind_last_block(contract, abi, monkeypatch):
    received = []
    listener = _listener(contract, abi, received, replay_blocks=5)
    listener.last_block = 100
    asked = []

    def fake_fetch(from_block, to_block):
        asked.append((from_block, to_block))
        return [listener.decode(_raw_log(abi, 10, block=99)), listener.decode(_raw_log(abi, 11, block=103))]

    monkeypatch.setattr(listener, "_chain_head", lambda: 104)
    monkeypatch.setattr(listener, "_fetch_logs", fake_fetch)
    assert await listener.backfill() == 2
    assert asked == [(95, 104)]
    assert [e.bet_id for e in received] == [10, 11]
    assert listener.last_block == 104


@pytest.mark.asyncio
async def test_reconnect_before_first_bet_replays_missed_logs(contract, abi, monkeypatch):
    received = []
    listener = _listener(contract, abi, received, replay_blocks=5)
    head = {"block": 200}
    chain_logs = []
    asked = []

    def fake_fetch(from_block, to_block):
        asked.append((from_block, to_block))
        in_range = [e for e in chain_logs if from_block <= int(e["blockNumber"], 16) <= to_block]
        return [listener.decode(e) for e in in_range]

    monkeypatch.setattr(listener, "_chain_head", lambda: head["block"])
    monkeypatch.setattr(listener, "_fetch_logs", fake_fetch)

    # First connect: no bet seen yet, the window is anchored at the head.
    assert await listener.backfill() == 0
    assert listener.last_block == 200

    # Disconnected while a bet is opened, then reconnect.
    chain_logs.append(_raw_log(abi, 42, block=215))
    head["block"] = 230
    assert await listener.backfill() == 1
    assert asked == [(195, 200), (195, 230)]
    assert [e.bet_id for e in received] == [42]
    assert listener.last_block == 230


@pytest.mark.asyncio
async def test_backfill_failure_forces_reconnect_and_keeps_anchor(contract, abi, monkeypatch):
    listener = _listener(contract, abi, [], replay_blocks=5)
    listener.last_block = 100

    def broken_fetch(from_block, to_block):
        raise TimeoutError("rpc timed out")

    monkeypatch.setattr(listener, "_chain_head", lambda: 120)
    monkeypatch.setattr(listener, "_fetch_logs", broken_fetch)
    with pytest.raises(ConnectionError):
        await listener.backfill()
    assert listener.last_block == 100
