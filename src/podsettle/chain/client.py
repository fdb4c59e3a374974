"""web3 client, contract and settlement account construction. Built once at startup."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract

from podsettle.errors import ChainConfigError

_DEFAULT_ABI_PATH = Path(__file__).resolve().parent / "podgame_abi.json"

BET_INITIALIZED = "BetInitialized"


def load_abi(path: str | Path | None = None) -> list[dict[str, Any]]:
    """Load the contract ABI (bundled PODGame fragment unless a path is configured)."""
    abi_path = Path(path) if path else _DEFAULT_ABI_PATH
    with open(abi_path, encoding="utf-8") as f:
        data = json.load(f)
    # Hardhat/Truffle artifacts wrap the ABI
    if isinstance(data, dict) and "abi" in data:
        data = data["abi"]
    if not isinstance(data, list):
        raise ChainConfigError(f"ABI at {abi_path} is not a list")
    return data


def build_web3(rpc_url: str, timeout: float = 30.0) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def build_contract(w3: Web3, address: str, abi: list[dict[str, Any]]) -> Contract:
    if not address:
        raise ChainConfigError("contract address is not configured (chain.contract_address)")
    return w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)


def load_account(private_key: str | None) -> LocalAccount:
    """Settlement signing account from its private key."""
    if not private_key:
        raise ChainConfigError("settlement key is not set (PODSETTLE_SETTLEMENT_KEY)")
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as e:
        raise ChainConfigError(f"invalid settlement key: {e}") from e


def event_signature(abi: list[dict[str, Any]], name: str = BET_INITIALIZED) -> str:
    """Canonical 'Name(type,...)' signature of an event in the ABI."""
    for item in abi:
        if item.get("type") == "event" and item.get("name") == name:
            types = ",".join(i["type"] for i in item.get("inputs", []))
            return f"{name}({types})"
    raise ChainConfigError(f"event {name} not found in ABI")


def event_topic(abi: list[dict[str, Any]], name: str = BET_INITIALIZED) -> str:
    """topic0 (0x-prefixed keccak of the signature) used to filter the event's logs."""
    return Web3.to_hex(Web3.keccak(text=event_signature(abi, name)))
