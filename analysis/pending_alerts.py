#!/usr/bin/env python3
"""Delay buffer for pure-buy alerts.

A pure-buy group is held for a fixed delay before it is announced. A sell of
the same token that lands inside the delay is folded into the held alert, so
a trade reversed within seconds produces one mixed alert instead of two.
"""
from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Tuple

from analysis.models import GroupAlert
from analysis.patterns import detect_flips
from analysis.pnl import combine_results
from constants import DEFAULT_ALERT_DELAY

logger = logging.getLogger(__name__)

PendingKey = Tuple[str, str, int]


@dataclass
class PendingBuyAlert:
    key: PendingKey
    enqueued_at: float
    alert: GroupAlert
    sells: List[GroupAlert] = field(default_factory=list)

    @property
    def signatures(self) -> List[str]:
        signatures = list(self.alert.group.signatures)
        for sell in self.sells:
            signatures.extend(sell.group.signatures)
        return signatures


class PendingBuyBuffer:
    def __init__(self, delay: float = DEFAULT_ALERT_DELAY, clock: Callable[[], float] = time.time) -> None:
        self.delay = delay
        self._clock = clock
        self._entries: Dict[PendingKey, PendingBuyAlert] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: PendingKey) -> bool:
        return key in self._entries

    def enqueue(self, alert: GroupAlert) -> PendingKey:
        key = (alert.account, alert.token_id, alert.group.first_time)
        if key in self._entries:
            logger.warning(
                "Pending buy %s already held; dropping duplicate group %s",
                key, ", ".join(sig[:16] for sig in alert.group.signatures),
            )
            return key
        self._entries[key] = PendingBuyAlert(key=key, enqueued_at=self._clock(), alert=alert)
        return key

    def attach_sell(self, sell_alert: GroupAlert) -> bool:
        """Folds a sell group into a pending buy of the same account and token.

        Returns False when no pending buy of that token is within the delay
        window of the sell, in which case the caller handles the sell itself.
        """
        for entry in self._entries.values():
            account, token_id, _ = entry.key
            if account != sell_alert.account or token_id != sell_alert.token_id:
                continue
            gap = sell_alert.group.first_time - entry.alert.group.last_time
            if 0 <= gap <= self.delay:
                entry.sells.append(sell_alert)
                return True
        return False

    def due(self, now: float | None = None) -> List[PendingBuyAlert]:
        """Entries older than the delay, oldest first, left in the buffer."""
        now = self._clock() if now is None else now
        due = [entry for entry in self._entries.values() if now - entry.enqueued_at >= self.delay]
        return sorted(due, key=lambda entry: entry.enqueued_at)

    def pop_due(self, now: float | None = None) -> List[PendingBuyAlert]:
        """Removes and returns every entry older than the delay."""
        due = self.due(now)
        for entry in due:
            del self._entries[entry.key]
        return due

    def clear(self) -> None:
        self._entries.clear()

    @staticmethod
    def merge(entry: PendingBuyAlert) -> GroupAlert:
        """The outgoing alert: the held buy plus any attached sells."""
        if not entry.sells:
            return entry.alert

        merged = copy.deepcopy(entry.alert)
        for sell_alert in entry.sells:
            for sell in sell_alert.group.sells:
                merged.group.add(sell)
            for buy in sell_alert.group.buys:
                merged.group.add(buy)

        last = entry.sells[-1]
        merged.balance_after = last.balance_after
        merged.is_complete_exit = any(sell.is_complete_exit for sell in entry.sells)
        merged.pnl = combine_results([sell.pnl for sell in entry.sells if sell.pnl is not None])
        merged.flips = detect_flips(merged.group)
        merged.hold_time = last.hold_time
        if last.price is not None:
            merged.price = last.price
        return merged
