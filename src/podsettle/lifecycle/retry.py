"""Bounded exponential backoff for price samples and store writes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_sec: float = 5.0
    max_delay_sec: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delays(self) -> Iterator[float]:
        """Sleep before each retry: max_attempts - 1 values, doubling up to max_delay_sec."""
        delay = self.base_delay_sec
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay_sec)
            delay *= 2
