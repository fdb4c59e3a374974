"""Outcome policy - compare the two price samples."""

from __future__ import annotations

from decimal import Decimal

from podsettle.models import Outcome


def compute_outcome(initial: Decimal, final: Decimal, threshold: Decimal = Decimal(0)) -> Outcome:
    """Pump when the price rose by more than threshold, Dump when it fell by more
    than threshold, otherwise No Change. The default threshold is exactly zero."""
    delta = final - initial
    if delta > threshold:
        return Outcome.PUMP
    if delta < -threshold:
        return Outcome.DUMP
    return Outcome.NO_CHANGE
