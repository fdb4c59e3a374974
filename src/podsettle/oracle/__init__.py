"""External price feed clients."""

from podsettle.oracle.dexscreener import PriceOracle

__all__ = ["PriceOracle"]
