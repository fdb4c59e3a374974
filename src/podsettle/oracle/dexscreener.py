"""DexScreener token price client - current USD price of a token's top pair."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog

log = structlog.get_logger(__name__)

DEXSCREENER_API_BASE = "https://api.dexscreener.com"


def parse_price(data: Any) -> Decimal | None:
    """Return priceUsd of the first listed pair, or None when the payload has no usable pair."""
    if not isinstance(data, dict):
        return None
    pairs = data.get("pairs")
    if not isinstance(pairs, list) or not pairs or not isinstance(pairs[0], dict):
        return None
    raw = pairs[0].get("priceUsd")
    if raw is None:
        return None
    try:
        price = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price < 0:
        return None
    return price


class PriceOracle:
    """Looks up token USD prices. Never retries and never raises for feed failures:
    a missing listing or a failed request both come back as None."""

    def __init__(
        self,
        base_url: str = DEXSCREENER_API_BASE,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def fetch_price(self, token_address: str) -> Decimal | None:
        url = f"{self.base_url}/latest/dex/tokens/{token_address}"
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            log.warning("price_fetch_failed", token=token_address, error=str(e))
            return None
        except ValueError as e:
            log.warning("price_response_malformed", token=token_address, error=str(e))
            return None
        price = parse_price(data)
        if price is None:
            log.info("price_not_available", token=token_address)
        else:
            log.info("price_fetched", token=token_address, price_usd=str(price))
        return price

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
