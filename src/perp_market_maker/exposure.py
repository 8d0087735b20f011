"""
Exposure Tracker

Normalises the venue position snapshot into an ``ExposureState`` and
classifies risk.  Notional is always recomputed from the current fair price
so risk decisions never lean on a venue-reported value.

``close_mode_active`` and ``position_at_max`` are the single definition of
the thresholds; the quote generator imports them from here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from .types import Position, PositionSide

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


class ExposureMode(str, Enum):
    NORMAL = "normal"
    CLOSE = "close"
    BLOCKED = "blocked"


def close_mode_active(signed_notional: Decimal, close_threshold_usd: Decimal) -> bool:
    return abs(signed_notional) >= close_threshold_usd


def position_at_max(signed_notional: Decimal, max_position_usd: Decimal) -> bool:
    return abs(signed_notional) >= max_position_usd


def classify_exposure(
    signed_notional: Decimal,
    *,
    close_threshold_usd: Decimal,
    max_position_usd: Decimal,
) -> ExposureMode:
    if position_at_max(signed_notional, max_position_usd):
        return ExposureMode.BLOCKED
    if close_mode_active(signed_notional, close_threshold_usd):
        return ExposureMode.CLOSE
    return ExposureMode.NORMAL


@dataclass(frozen=True)
class ExposureState:
    side: PositionSide = PositionSide.FLAT
    size: Decimal = _ZERO
    entry_price: Decimal = _ZERO
    notional_usd: Decimal = _ZERO
    unrealized_pnl_usd: Decimal = _ZERO
    mode: ExposureMode = ExposureMode.NORMAL


class ExposureTracker:
    def __init__(
        self,
        *,
        close_threshold_usd: Decimal,
        max_position_usd: Decimal,
    ) -> None:
        self._close_threshold = close_threshold_usd
        self._max_position = max_position_usd
        self._state = ExposureState()

    @property
    def state(self) -> ExposureState:
        return self._state

    def update_position(
        self,
        snapshot: Optional[Position],
        fair_price: Optional[Decimal] = None,
    ) -> ExposureState:
        """Replace the exposure state from a venue snapshot (``None`` = flat)."""
        if snapshot is None or snapshot.size <= 0 or snapshot.side == PositionSide.FLAT:
            self._state = ExposureState()
            return self._state

        sign = Decimal("-1") if snapshot.side == PositionSide.SHORT else Decimal("1")
        price = fair_price
        if price is None or price <= 0:
            price = snapshot.mark_price if snapshot.mark_price else snapshot.entry_price
        notional = sign * snapshot.size * price

        if snapshot.unrealized_pnl is not None:
            pnl = snapshot.unrealized_pnl
        else:
            pnl = (price - snapshot.entry_price) * snapshot.size * sign

        mode = classify_exposure(
            notional,
            close_threshold_usd=self._close_threshold,
            max_position_usd=self._max_position,
        )
        previous = self._state.mode
        self._state = ExposureState(
            side=snapshot.side,
            size=snapshot.size,
            entry_price=snapshot.entry_price,
            notional_usd=notional,
            unrealized_pnl_usd=pnl,
            mode=mode,
        )
        if mode != previous:
            logger.info(
                "Exposure mode %s -> %s (notional=%s)",
                previous.value,
                mode.value,
                notional,
            )
        return self._state

    def is_at_max(self) -> bool:
        return position_at_max(self._state.notional_usd, self._max_position)

    def is_close_mode(self) -> bool:
        return close_mode_active(self._state.notional_usd, self._close_threshold)

    def get_signed_notional(self) -> Decimal:
        return self._state.notional_usd

    def format_position(self) -> str:
        s = self._state
        if s.side == PositionSide.FLAT:
            return "FLAT"
        return (
            f"{s.side.value.upper()} {s.size} @ {s.entry_price} "
            f"(${s.notional_usd:.2f}, pnl ${s.unrealized_pnl_usd:.2f})"
        )
