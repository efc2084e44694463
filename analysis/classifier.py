#!/usr/bin/env python3
"""Rule-based swap classification.

Each rule inspects one transaction's deltas and either returns a SwapEvent or
None ("no match"). Rules are tried in order and the first match wins. Native
amounts for sells are resolved through an ordered list of extraction
strategies, since indexers disagree on where real swap proceeds show up
versus fee and rent transfers.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from analysis.models import BUY, SELL, RawTransaction, SwapEvent, TransferDeltas
from constants import (
    LARGE_TOKEN_OUTFLOW,
    NATIVE_EPSILON,
    NATIVE_NOISE_FLOOR,
    SELL_KEYWORDS,
    TOKEN_EPSILON,
    WSOL_MINT,
)

logger = logging.getLogger(__name__)

_DESCRIPTION_SOL_RE = re.compile(r'for\s+([\d,]*\.?\d+)\s+SOL\b', re.IGNORECASE)


@dataclass
class ClassificationContext:
    tx: RawTransaction
    deltas: TransferDeltas
    account: str

    @property
    def significant_tokens(self) -> List[Tuple[str, float]]:
        return [(mint, delta) for mint, delta in self.deltas.token_deltas.items() if abs(delta) > TOKEN_EPSILON]

    @property
    def outbound_tokens(self) -> List[Tuple[str, float]]:
        return [(mint, delta) for mint, delta in self.significant_tokens if delta < -TOKEN_EPSILON]

    @property
    def native_significant(self) -> bool:
        return abs(self.deltas.native_delta) > NATIVE_EPSILON

    def is_account(self, address: Optional[str]) -> bool:
        return bool(address) and address.lower() == self.account.lower()


# --- Native amount strategies ---

def protocol_native_output(ctx: ClassificationContext) -> Optional[float]:
    swap = ctx.tx.swap
    if swap and swap.native_output_amount and ctx.is_account(swap.native_output_account):
        return swap.native_output_amount
    return None


def inner_swap_native_output(ctx: ClassificationContext) -> Optional[float]:
    if not ctx.tx.swap:
        return None
    total = sum(
        transfer.amount
        for transfer in ctx.tx.swap.inner_token_outputs
        if transfer.mint == WSOL_MINT and ctx.is_account(transfer.to_account)
    )
    return total or None


def description_native_amount(ctx: ClassificationContext) -> Optional[float]:
    if not ctx.tx.description:
        return None
    match = _DESCRIPTION_SOL_RE.search(ctx.tx.description)
    if not match:
        return None
    try:
        return float(match.group(1).replace(',', ''))
    except ValueError:
        return None


def summed_native_inflows(ctx: ClassificationContext) -> Optional[float]:
    total = sum(amount for amount in ctx.deltas.native_inflows if amount > NATIVE_NOISE_FLOOR)
    return total or None


def largest_native_inflow(ctx: ClassificationContext) -> Optional[float]:
    return max(ctx.deltas.native_inflows, default=None)


def net_native_delta(ctx: ClassificationContext) -> Optional[float]:
    return abs(ctx.deltas.native_delta) or None


def protocol_native_input(ctx: ClassificationContext) -> Optional[float]:
    swap = ctx.tx.swap
    if swap and swap.native_input_amount and ctx.is_account(swap.native_input_account):
        return swap.native_input_amount
    return None


NativeStrategy = Callable[[ClassificationContext], Optional[float]]

SELL_INFLOW_STRATEGIES: List[NativeStrategy] = [
    protocol_native_output,
    inner_swap_native_output,
    description_native_amount,
    summed_native_inflows,
    largest_native_inflow,
]
SELL_NATIVE_STRATEGIES: List[NativeStrategy] = SELL_INFLOW_STRATEGIES + [net_native_delta]
BUY_NATIVE_STRATEGIES: List[NativeStrategy] = [protocol_native_input, net_native_delta]


def resolve_native_amount(ctx: ClassificationContext, strategies: List[NativeStrategy]) -> Optional[float]:
    """Returns the first strategy result that is a usable native amount."""
    for strategy in strategies:
        value = strategy(ctx)
        if value is not None and value >= NATIVE_EPSILON:
            return value
    return None


def _event(ctx: ClassificationContext, swap_type: str, mint: str, token_delta: float,
           strategies: List[NativeStrategy]) -> Optional[SwapEvent]:
    native_amount = resolve_native_amount(ctx, strategies)
    if native_amount is None:
        logger.debug("Swap-like tx %s has no usable native amount", ctx.tx.signature[:16])
        return None
    return SwapEvent(
        signature=ctx.tx.signature,
        timestamp=ctx.tx.timestamp,
        type=swap_type,
        token_id=mint,
        token_amount=abs(token_delta),
        native_amount=native_amount,
    )


# --- Rules ---

def clean_native_swap(ctx: ClassificationContext) -> Optional[SwapEvent]:
    tokens = ctx.significant_tokens
    if len(tokens) != 1 or not ctx.native_significant:
        return None
    mint, token_delta = tokens[0]
    native = ctx.deltas.native_delta
    if native < -NATIVE_EPSILON and token_delta > TOKEN_EPSILON:
        return _event(ctx, BUY, mint, token_delta, BUY_NATIVE_STRATEGIES)
    if native > NATIVE_EPSILON and token_delta < -TOKEN_EPSILON:
        return _event(ctx, SELL, mint, token_delta, SELL_NATIVE_STRATEGIES)
    return None


def large_token_outflow(ctx: ClassificationContext) -> Optional[SwapEvent]:
    tokens = ctx.significant_tokens
    if len(tokens) != 1 or ctx.deltas.native_delta >= -NATIVE_EPSILON:
        return None
    mint, token_delta = tokens[0]
    if token_delta < -LARGE_TOKEN_OUTFLOW:
        return _event(ctx, SELL, mint, token_delta, SELL_NATIVE_STRATEGIES)
    return None


def described_sell(ctx: ClassificationContext) -> Optional[SwapEvent]:
    description = (ctx.tx.description or '').lower()
    if not any(keyword in description for keyword in SELL_KEYWORDS):
        return None
    outbound = ctx.outbound_tokens
    if len(outbound) != 1:
        return None
    mint, token_delta = outbound[0]
    return _event(ctx, SELL, mint, token_delta, SELL_NATIVE_STRATEGIES)


def native_only(ctx: ClassificationContext) -> Optional[SwapEvent]:
    if not ctx.significant_tokens and ctx.native_significant:
        logger.debug(
            "SOL change %.4f in %s without a significant token change",
            ctx.deltas.native_delta,
            ctx.tx.signature[:16],
        )
    return None


Rule = Callable[[ClassificationContext], Optional[SwapEvent]]

RULES: List[Rule] = [
    clean_native_swap,
    large_token_outflow,
    described_sell,
    native_only,
]


def classify_swap(tx: RawTransaction, deltas: Optional[TransferDeltas], account: str) -> Optional[SwapEvent]:
    """Zero or one swap event for `account` in this transaction."""
    if tx.failed or deltas is None:
        return None
    ctx = ClassificationContext(tx=tx, deltas=deltas, account=account)
    for rule in RULES:
        event = rule(ctx)
        if event is not None:
            logger.debug("%s matched %s: %s %s", tx.signature[:16], rule.__name__, event.type, event.token_id[:8])
            return event
    return None
