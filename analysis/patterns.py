#!/usr/bin/env python3
"""Descriptive statistics over an account's past swaps and deviation flags."""
from __future__ import annotations

import statistics
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from analysis.models import (
    Deviation,
    Flip,
    FlipSummary,
    MarketCapAssessment,
    SwapEvent,
    SwapGroup,
)
from constants import (
    FLIP_WINDOW,
    HIGH_ENTRY_PERCENTILE,
    LARGE_BUY_SOL,
    LOW_ENTRY_PERCENTILE,
    LOW_MARKET_CAP_FLOOR,
    MARKET_CAP_HISTORY_MIN,
    TEST_BUY_SOL,
    TYPICAL_SIZE_TOLERANCE,
    UNUSUAL_BUY_MULTIPLIER,
    VERY_LOW_MARKET_CAP_FLOOR,
)


@dataclass
class MarketCapStats:
    values: List[float] = field(default_factory=list)

    @classmethod
    def from_history(cls, history: Iterable[SwapEvent]) -> "MarketCapStats":
        values = sorted(
            event.market_cap for event in history
            if event.is_buy and event.market_cap is not None and event.market_cap > 0
        )
        return cls(values=values)

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def average(self) -> Optional[float]:
        return statistics.fmean(self.values) if self.values else None

    @property
    def median(self) -> Optional[float]:
        return statistics.median(self.values) if self.values else None

    @property
    def minimum(self) -> Optional[float]:
        return self.values[0] if self.values else None

    def percentile(self, p: float) -> Optional[float]:
        """Linear-interpolated p-th percentile (0-100)."""
        if not self.values:
            return None
        if len(self.values) == 1:
            return self.values[0]
        rank = (min(max(p, 0.0), 100.0) / 100) * (len(self.values) - 1)
        lower = int(rank)
        upper = min(lower + 1, len(self.values) - 1)
        fraction = rank - lower
        return self.values[lower] + (self.values[upper] - self.values[lower]) * fraction

    def percentile_rank(self, value: float) -> Optional[float]:
        """Share of historical values strictly below `value`, in percent."""
        if not self.values:
            return None
        below = sum(1 for v in self.values if v < value)
        return below / len(self.values) * 100


def assess_market_cap(market_cap: Optional[float], stats: MarketCapStats) -> MarketCapAssessment:
    if market_cap is None or market_cap <= 0:
        return MarketCapAssessment(market_cap=None)
    average = stats.average
    low = market_cap < LOW_MARKET_CAP_FLOOR or (average is not None and market_cap < average / 2)
    return MarketCapAssessment(
        market_cap=market_cap,
        low=low,
        very_low=market_cap < VERY_LOW_MARKET_CAP_FLOOR,
        percentile_rank=stats.percentile_rank(market_cap),
        median=stats.median,
    )


def detect_market_cap_deviations(market_cap: Optional[float], stats: MarketCapStats) -> List[Deviation]:
    """Flags an entry market cap at the edges of the account's past buys.

    Needs at least MARKET_CAP_HISTORY_MIN earlier buys with a known market cap.
    """
    if market_cap is None or market_cap <= 0 or stats.count < MARKET_CAP_HISTORY_MIN:
        return []

    if market_cap < stats.minimum:
        return [Deviation(
            type='lowest_entry_on_record',
            message=f"Lowest entry on record: ${market_cap:,.0f} (previous low ${stats.minimum:,.0f})",
            severity='high',
        )]
    if market_cap <= stats.percentile(LOW_ENTRY_PERCENTILE):
        return [Deviation(
            type='bottom_decile_entry',
            message=f"Entry in the bottom 10% of past buys (median ${stats.median:,.0f})",
            severity='medium',
        )]
    if market_cap >= stats.percentile(HIGH_ENTRY_PERCENTILE):
        return [Deviation(
            type='top_decile_entry',
            message=f"Entry in the top 10% of past buys (median ${stats.median:,.0f})",
            severity='medium',
        )]
    return []


def detect_flips(group: SwapGroup, window: int = FLIP_WINDOW) -> FlipSummary:
    """Pairs every sell with the nearest preceding buy of the group."""
    summary = FlipSummary()
    buys = sorted(group.buys, key=lambda ev: ev.timestamp)
    for sell in group.sells:
        preceding = [buy for buy in buys if buy.timestamp <= sell.timestamp]
        if not preceding:
            continue
        buy = preceding[-1]
        latency = sell.timestamp - buy.timestamp
        if latency <= window:
            summary.flips.append(
                Flip(
                    buy_signature=buy.signature,
                    sell_signature=sell.signature,
                    latency=latency,
                    pnl=sell.native_amount - buy.native_amount,
                )
            )
    return summary


@dataclass
class BuyBehaviour:
    average_size: float = 0.0
    typical_sizes: List[float] = field(default_factory=list)
    count: int = 0

    @classmethod
    def from_history(cls, history: Iterable[SwapEvent]) -> "BuyBehaviour":
        sizes = [event.native_amount for event in history if event.is_buy and event.native_amount > 0]
        if not sizes:
            return cls()
        counts = Counter(round(size, 2) for size in sizes)
        return cls(
            average_size=sum(sizes) / len(sizes),
            typical_sizes=[size for size, _ in counts.most_common(5)],
            count=len(sizes),
        )

    def is_typical(self, size: float) -> bool:
        return any(abs(size - typical) < TYPICAL_SIZE_TOLERANCE for typical in self.typical_sizes)


def detect_buy_deviations(
    buy: SwapEvent,
    behaviour: BuyBehaviour,
    token_history: Sequence[SwapEvent],
) -> List[Deviation]:
    """Flags a buy that departs from the account's usual sizing habits.

    `token_history` holds this account's earlier swaps of the same token,
    oldest first, excluding `buy` itself.
    """
    deviations: List[Deviation] = []
    size = buy.native_amount
    prior_buys = [event for event in token_history if event.is_buy and event.timestamp <= buy.timestamp]

    if size > LARGE_BUY_SOL and not any(event.native_amount < TEST_BUY_SOL for event in prior_buys):
        deviations.append(Deviation(
            type='large_buy_without_test',
            message=f"Large buy {size:.3f} SOL without test buys first",
            severity='high',
        ))

    if size < TEST_BUY_SOL and prior_buys and prior_buys[-1].native_amount > LARGE_BUY_SOL:
        deviations.append(Deviation(
            type='test_buy_after_large',
            message="Test buy after a large buy, unusual sequence",
            severity='medium',
        ))

    if behaviour.count and not behaviour.is_typical(size) and size > behaviour.average_size * UNUSUAL_BUY_MULTIPLIER:
        deviations.append(Deviation(
            type='unusually_large_buy',
            message=f"Large buy: {size:.3f} SOL (avg: {behaviour.average_size:.3f} SOL)",
            severity='high',
        ))
    return deviations


def hold_time(token_history: Iterable[SwapEvent], sell: SwapEvent) -> Optional[int]:
    """Seconds between the most recent earlier buy and `sell`."""
    buys = [event.timestamp for event in token_history if event.is_buy and event.timestamp <= sell.timestamp]
    if not buys:
        return None
    return sell.timestamp - max(buys)
