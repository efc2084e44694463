#!/usr/bin/env python3
"""Realized profit/loss using FIFO lot matching."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional

from analysis.models import LedgerEntry, PnLResult, SwapEvent, SwapGroup
from constants import TOKEN_EPSILON


@dataclass
class BuyLot:
    tokens_remaining: float
    cost_remaining: float


def _match_sell(queue: Deque[BuyLot], tokens_to_sell: float) -> float:
    """Consumes lots oldest first and returns the matched cost basis."""
    matched_cost = 0.0
    while tokens_to_sell > TOKEN_EPSILON and queue:
        lot = queue[0]
        if lot.tokens_remaining <= tokens_to_sell:
            matched_cost += lot.cost_remaining
            tokens_to_sell -= lot.tokens_remaining
            queue.popleft()
        else:
            portion = lot.cost_remaining * (tokens_to_sell / lot.tokens_remaining)
            matched_cost += portion
            lot.tokens_remaining -= tokens_to_sell
            lot.cost_remaining -= portion
            tokens_to_sell = 0.0
    return matched_cost


def replay_sells(history: Iterable[SwapEvent]) -> Dict[str, PnLResult]:
    """Replays a token's chronological history; one PnLResult per sell signature."""
    queue: Deque[BuyLot] = deque()
    cumulative = 0.0
    results: Dict[str, PnLResult] = {}
    for event in sorted(history, key=lambda ev: ev.timestamp):
        if event.is_buy:
            queue.append(BuyLot(event.token_amount, event.native_amount))
            continue
        available = sum(lot.tokens_remaining for lot in queue)
        matched_cost = _match_sell(queue, event.token_amount)
        unmatched = max(0.0, event.token_amount - available)
        pnl: Optional[float] = None
        pnl_percent: Optional[float] = None
        if matched_cost > 0:
            pnl = event.native_amount - matched_cost
            pnl_percent = pnl / matched_cost * 100
            cumulative += pnl
        results[event.signature] = PnLResult(
            proceeds=event.native_amount,
            matched_cost=matched_cost,
            pnl=pnl,
            pnl_percent=pnl_percent,
            cumulative_pnl=cumulative,
            unmatched_tokens=unmatched,
        )
    return results


def realized_pnl(history: Iterable[SwapEvent], up_to_signature: str) -> Optional[PnLResult]:
    """PnL of the sell `up_to_signature`, or None when it is not a sell in `history`."""
    return replay_sells(history).get(up_to_signature)


def average_cost_pnl(entry: Optional[LedgerEntry], sell: SwapEvent) -> Optional[PnLResult]:
    """Fallback when no lot history is available: price the sell at average cost."""
    if entry is None or entry.cost_basis <= 0 or entry.total_tokens_bought <= 0:
        return None
    matched_cost = sell.token_amount / entry.total_tokens_bought * entry.cost_basis
    pnl = sell.native_amount - matched_cost
    return PnLResult(
        proceeds=sell.native_amount,
        matched_cost=matched_cost,
        pnl=pnl,
        pnl_percent=pnl / matched_cost * 100,
        cumulative_pnl=pnl,
    )


def group_pnl(history: Iterable[SwapEvent], group: SwapGroup) -> Optional[PnLResult]:
    """Sums the per-sell results of every sell in `group`."""
    if not group.sells:
        return None
    per_sell = replay_sells(history)
    return combine_results([per_sell[sell.signature] for sell in group.sells if sell.signature in per_sell])


def combine_results(results: List[PnLResult]) -> Optional[PnLResult]:
    """Aggregates chronologically ordered per-sell results into one."""
    if not results:
        return None
    matched_cost = sum(result.matched_cost for result in results)
    proceeds = sum(result.proceeds for result in results)
    available = [result for result in results if result.available]
    pnl = sum(result.pnl for result in available) if available else None
    pnl_percent = pnl / matched_cost * 100 if pnl is not None and matched_cost > 0 else None
    return PnLResult(
        proceeds=proceeds,
        matched_cost=matched_cost,
        pnl=pnl,
        pnl_percent=pnl_percent,
        cumulative_pnl=results[-1].cumulative_pnl,
        unmatched_tokens=sum(result.unmatched_tokens for result in results),
    )
