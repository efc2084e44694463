#!/usr/bin/env python3
"""Per (account, token) position bookkeeping."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from analysis.models import LedgerEntry, LedgerUpdate, SwapEvent
from constants import TOKEN_EPSILON

logger = logging.getLogger(__name__)

# Relative slack before a negative balance counts as an inconsistency.
NEGATIVE_BALANCE_TOLERANCE = 0.001


def apply_delta(
    entry: Optional[LedgerEntry],
    delta: float,
    *,
    native_amount: Optional[float] = None,
    signature: Optional[str] = None,
    is_first_buy: bool = False,
    price: Optional[float] = None,
    timestamp: Optional[int] = None,
) -> LedgerEntry:
    """Returns a new entry with one signed token delta applied."""
    current = entry or LedgerEntry()
    updated = replace(current, balance=current.balance + delta)
    if delta > 0:
        updated.total_tokens_bought = current.total_tokens_bought + delta
        updated.cost_basis = current.cost_basis + (native_amount or 0.0)
        if is_first_buy and not current.first_buy_signature:
            updated.first_buy_signature = signature
            updated.first_buy_timestamp = timestamp
            updated.first_buy_price = price
    return updated


def is_inconsistent(entry: LedgerEntry) -> bool:
    tolerance = max(TOKEN_EPSILON, NEGATIVE_BALANCE_TOLERANCE * entry.total_tokens_bought)
    return entry.balance < -tolerance


def apply_event(entry: Optional[LedgerEntry], event: SwapEvent) -> LedgerUpdate:
    before = entry.balance if entry else 0.0
    is_first_buy = event.is_buy and (entry is None or not entry.first_buy_signature)
    delta = event.token_amount if event.is_buy else -event.token_amount
    updated = apply_delta(
        entry,
        delta,
        native_amount=event.native_amount,
        signature=event.signature,
        is_first_buy=is_first_buy,
        price=event.price,
        timestamp=event.timestamp,
    )
    after = updated.balance
    inconsistent = is_inconsistent(updated)
    if inconsistent:
        logger.warning(
            "Ledger for %s would go negative (%.6f -> %.6f); upstream history is incomplete",
            event.token_id[:8],
            before,
            after,
        )
    return LedgerUpdate(
        entry=updated,
        balance_before=before,
        balance_after=after,
        is_first_buy=is_first_buy,
        is_complete_exit=is_complete_exit(before, after) and not event.is_buy,
        inconsistent=inconsistent,
    )


def is_complete_exit(balance_before: float, balance_after: float) -> bool:
    return balance_before > TOKEN_EPSILON and balance_after <= TOKEN_EPSILON


def display_balance(balance: float) -> float:
    return max(0.0, balance)
