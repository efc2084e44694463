#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

BUY = 'buy'
SELL = 'sell'


@dataclass(frozen=True)
class NativeTransfer:
    """A SOL movement between two accounts, amount in SOL."""
    from_account: str
    to_account: str
    amount: float


@dataclass(frozen=True)
class TokenTransfer:
    """An SPL token movement, amount in UI units."""
    from_account: str
    to_account: str
    mint: str
    amount: float


@dataclass(frozen=True)
class SwapMetadata:
    """Protocol-level swap data reported by the indexer (Helius `events.swap`)."""
    native_input_account: Optional[str] = None
    native_input_amount: Optional[float] = None
    native_output_account: Optional[str] = None
    native_output_amount: Optional[float] = None
    inner_token_outputs: Tuple[TokenTransfer, ...] = ()


@dataclass(frozen=True)
class RawTransaction:
    signature: str
    timestamp: int
    description: Optional[str] = None
    native_transfers: Tuple[NativeTransfer, ...] = ()
    token_transfers: Tuple[TokenTransfer, ...] = ()
    failed: bool = False
    swap: Optional[SwapMetadata] = None


@dataclass
class TransferDeltas:
    """Signed balance changes of one watched account within one transaction."""
    native_delta: float
    token_deltas: Dict[str, float]
    native_inflows: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class SwapEvent:
    signature: str
    timestamp: int
    type: str  # 'buy' or 'sell'
    token_id: str
    token_amount: float
    native_amount: float
    price: Optional[float] = None
    market_cap: Optional[float] = None

    @property
    def is_buy(self) -> bool:
        return self.type == BUY

    def with_market(self, price: Optional[float], market_cap: Optional[float]) -> "SwapEvent":
        return replace(self, price=price, market_cap=market_cap)


@dataclass
class SwapGroup:
    """Temporally adjacent swaps of one token, reported as a single event."""
    token_id: str
    first_time: int
    last_time: int
    signatures: List[str] = field(default_factory=list)
    buys: List[SwapEvent] = field(default_factory=list)
    sells: List[SwapEvent] = field(default_factory=list)
    total_buy_token_amount: float = 0.0
    total_sell_token_amount: float = 0.0
    total_buy_native_amount: float = 0.0
    total_sell_native_amount: float = 0.0

    @classmethod
    def start(cls, event: SwapEvent) -> "SwapGroup":
        group = cls(token_id=event.token_id, first_time=event.timestamp, last_time=event.timestamp)
        group.add(event)
        return group

    def add(self, event: SwapEvent) -> None:
        if event.token_id != self.token_id:
            raise ValueError(f"Cannot add {event.token_id} swap to {self.token_id} group")
        self.signatures.append(event.signature)
        self.first_time = min(self.first_time, event.timestamp)
        self.last_time = max(self.last_time, event.timestamp)
        if event.is_buy:
            self.buys.append(event)
            self.total_buy_token_amount += event.token_amount
            self.total_buy_native_amount += event.native_amount
        else:
            self.sells.append(event)
            self.total_sell_token_amount += event.token_amount
            self.total_sell_native_amount += event.native_amount

    @property
    def events(self) -> List[SwapEvent]:
        return sorted(self.buys + self.sells, key=lambda ev: ev.timestamp)

    @property
    def is_pure_buy(self) -> bool:
        return bool(self.buys) and not self.sells

    @property
    def is_pure_sell(self) -> bool:
        return bool(self.sells) and not self.buys

    @property
    def is_mixed(self) -> bool:
        return bool(self.buys) and bool(self.sells)

    @property
    def net_native(self) -> float:
        return self.total_sell_native_amount - self.total_buy_native_amount


@dataclass
class LedgerEntry:
    balance: float = 0.0
    cost_basis: float = 0.0
    total_tokens_bought: float = 0.0
    first_buy_signature: Optional[str] = None
    first_buy_timestamp: Optional[int] = None
    first_buy_price: Optional[float] = None


@dataclass
class LedgerUpdate:
    entry: LedgerEntry
    balance_before: float
    balance_after: float
    is_first_buy: bool
    is_complete_exit: bool
    inconsistent: bool = False


@dataclass
class PnLResult:
    proceeds: float
    matched_cost: float
    pnl: Optional[float]
    pnl_percent: Optional[float]
    cumulative_pnl: float
    unmatched_tokens: float = 0.0

    @property
    def available(self) -> bool:
        return self.pnl is not None


@dataclass
class Flip:
    buy_signature: str
    sell_signature: str
    latency: int
    pnl: float


@dataclass
class FlipSummary:
    flips: List[Flip] = field(default_factory=list)

    @property
    def detected(self) -> bool:
        return bool(self.flips)

    @property
    def fastest(self) -> Optional[int]:
        return min((flip.latency for flip in self.flips), default=None)

    @property
    def total_pnl(self) -> float:
        return sum(flip.pnl for flip in self.flips)


@dataclass
class MarketCapAssessment:
    market_cap: Optional[float]
    low: bool = False
    very_low: bool = False
    percentile_rank: Optional[float] = None
    median: Optional[float] = None


@dataclass
class Deviation:
    type: str
    message: str
    severity: str  # 'high' or 'medium'


@dataclass
class TokenPrice:
    price: float
    change_24h: Optional[float] = None


@dataclass
class TokenMetadata:
    name: Optional[str] = None
    symbol: Optional[str] = None
    market_cap: Optional[float] = None
    image_url: Optional[str] = None
    price_usd: Optional[float] = None


@dataclass
class GroupAlert:
    """Fully analysed payload for one group, rendered at emission time."""
    account: str
    account_name: str
    group: SwapGroup
    metadata: Optional[TokenMetadata] = None
    price: Optional[float] = None
    market_cap: Optional[float] = None
    balance_before: float = 0.0
    balance_after: float = 0.0
    is_first_buy: bool = False
    is_complete_exit: bool = False
    pnl: Optional[PnLResult] = None
    flips: FlipSummary = field(default_factory=FlipSummary)
    market_cap_assessment: Optional[MarketCapAssessment] = None
    deviations: List[Deviation] = field(default_factory=list)
    kol_count: int = 0
    kol_accounts: List[str] = field(default_factory=list)
    other_kols: List[str] = field(default_factory=list)
    hold_time: Optional[int] = None

    @property
    def token_id(self) -> str:
        return self.group.token_id

    @property
    def symbol(self) -> str:
        if self.metadata and self.metadata.symbol:
            return self.metadata.symbol.upper()
        return self.group.token_id[:8].upper()

    @property
    def is_multi_kol_buy(self) -> bool:
        return self.is_first_buy and self.kol_count >= 2
