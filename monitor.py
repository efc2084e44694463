# monitor.py
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from analysis.classifier import classify_swap
from analysis.grouping import group_swaps
from analysis.ledger import apply_event
from analysis.models import GroupAlert, LedgerEntry, SwapEvent, SwapGroup, TokenMetadata
from analysis.normalizer import (
    MalformedTransactionError,
    extract_signature,
    extract_timestamp,
    normalize_transfers,
    parse_transaction,
)
from analysis.patterns import (
    BuyBehaviour,
    MarketCapStats,
    assess_market_cap,
    detect_buy_deviations,
    detect_flips,
    detect_market_cap_deviations,
    hold_time,
)
from analysis.pending_alerts import PendingBuyBuffer
from analysis.pnl import average_cost_pnl, combine_results, group_pnl
from config import AppConfig
from constants import DEFAULT_TOKEN_SUPPLY
from reports.kol_alert import render_group_alert
from services.helius_client import TransientFetchError

logger = logging.getLogger(__name__)

EMITTED = 'emitted'
QUEUED = 'queued'
ATTACHED = 'attached'
SKIPPED = 'skipped'


def select_new_transactions(
    batch: List[Dict[str, Any]], cursor: Optional[str]
) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]], bool]:
    """Splits a newest-first batch at the cursor.

    Returns the unseen payloads oldest-first, the newest signed payload in the
    batch and whether the cursor was found.
    """
    new: List[Dict[str, Any]] = []
    newest: Optional[Dict[str, Any]] = None
    found = False
    for payload in batch:
        signature = extract_signature(payload)
        if signature is None:
            continue
        if newest is None:
            newest = payload
        if cursor is not None and signature == cursor:
            found = True
            break
        new.append(payload)
    new.reverse()
    return new, newest, found


@dataclass
class PassSummary:
    account: str
    fetched: int = 0
    new_transactions: int = 0
    swaps: int = 0
    groups: int = 0
    emitted: int = 0
    queued: int = 0
    aborted: bool = False


class KolMonitor:
    def __init__(
        self,
        config: AppConfig,
        transaction_source,
        price_source,
        metadata_source,
        repository,
        notifier,
        pending: Optional[PendingBuyBuffer] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.accounts: Dict[str, str] = dict(config.kols)
        self.transaction_source = transaction_source
        self.price_source = price_source
        self.metadata_source = metadata_source
        self.repository = repository
        self.notifier = notifier
        self.pending = pending if pending is not None else PendingBuyBuffer(config.alert_delay)
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(config.max_concurrent_accounts)
        self._account_locks: Dict[str, asyncio.Lock] = {}
        self.last_poll_time: Optional[float] = None
        self.last_error: Optional[str] = None
        self.alerts_sent = 0

    def account_name(self, account: str) -> str:
        return self.accounts.get(account) or f"{account[:8]}..."

    def _lock_for(self, account: str) -> asyncio.Lock:
        lock = self._account_locks.get(account)
        if lock is None:
            lock = self._account_locks[account] = asyncio.Lock()
        return lock

    # --- Scheduling ---

    async def start(self):
        await self.run_forever()

    async def run_forever(self):
        """Runs the polling loop and the delayed-alert sweep until cancelled."""
        poll_task = asyncio.create_task(self._run_poll_loop())
        sweep_task = asyncio.create_task(self._run_sweep_loop())
        try:
            await asyncio.gather(poll_task, sweep_task)
        finally:
            poll_task.cancel()
            sweep_task.cancel()
            await asyncio.gather(poll_task, sweep_task, return_exceptions=True)

    async def _run_poll_loop(self):
        while True:
            logger.info("Starting polling pass over %d account(s)", len(self.accounts))
            try:
                await self.poll_all()
            except Exception as e:
                self.last_error = str(e)
                logger.exception("Error during polling pass: %s", e)
            logger.info("Polling pass finished. Waiting %s seconds...", self.config.interval)
            await asyncio.sleep(self.config.interval)

    async def _run_sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.sweep_pending_buy_alerts()
            except Exception as e:
                logger.exception("Error sweeping pending buy alerts: %s", e)

    async def poll_all(self) -> List[Optional[PassSummary]]:
        async def _guarded(account: str) -> Optional[PassSummary]:
            async with self._semaphore:
                try:
                    return await self.process_once(account)
                except Exception as e:
                    self.last_error = f"{self.account_name(account)}: {e}"
                    logger.exception("Error processing account %s", self.account_name(account))
                    return None

        results = await asyncio.gather(*(_guarded(account) for account in self.accounts))
        self.last_poll_time = time.time()
        return list(results)

    # --- Per-account pass ---

    async def process_once(self, account: str) -> PassSummary:
        """One sequential pass over an account's newest transactions."""
        async with self._lock_for(account):
            return await self._process_account(account)

    async def _process_account(self, account: str) -> PassSummary:
        name = self.account_name(account)
        summary = PassSummary(account=account)

        try:
            batch = await self.transaction_source.fetch_recent_transactions(account, self.config.fetch_limit)
        except TransientFetchError as e:
            logger.warning("Skipping %s this pass: %s", name, e)
            summary.aborted = True
            return summary
        summary.fetched = len(batch)

        cursor = await self.repository.get_cursor(account)
        new_payloads, newest, cursor_found = select_new_transactions(batch, cursor)
        if cursor is not None and not cursor_found and new_payloads:
            logger.warning(
                "Cursor %s not in latest %d transactions of %s; history may have a gap",
                cursor[:16], len(batch), name,
            )
        summary.new_transactions = len(new_payloads)

        events: List[SwapEvent] = []
        for payload in new_payloads:
            try:
                tx = parse_transaction(payload)
            except MalformedTransactionError as e:
                logger.warning("Skipping malformed transaction for %s: %s", name, e)
                continue
            event = classify_swap(tx, normalize_transfers(tx, account), account)
            if event is None:
                continue
            if await self.repository.has_swap(event.signature) or await self.repository.has_alerted(event.signature):
                logger.debug("Already handled %s", event.signature[:16])
                continue
            logger.info(
                "%s %s %.4f of %s for %.4f SOL",
                name, event.type, event.token_amount, event.token_id[:8], event.native_amount,
            )
            events.append(event)
        summary.swaps = len(events)

        groups = group_swaps(events, self.config.grouping_window)
        summary.groups = len(groups)
        for group in groups:
            alert = await self._apply_group(account, group)
            if alert is None:
                continue
            outcome = await self._decide(alert)
            if outcome == EMITTED:
                summary.emitted += 1
            elif outcome == QUEUED:
                summary.queued += 1

        newest_signature = extract_signature(newest) if newest else None
        if newest_signature and newest_signature != cursor:
            advanced = await self.repository.set_cursor(account, newest_signature, extract_timestamp(newest))
            if not advanced:
                logger.info("Kept cursor for %s: batch head %s is older", name, newest_signature[:16])
        return summary

    async def _enrich(self, token_id: str) -> Tuple[Optional[TokenMetadata], Optional[float], Optional[float]]:
        price_info = await self.price_source.price_of(token_id)
        if self.config.lookup_delay > 0:
            await self._sleep(self.config.lookup_delay)
        metadata = await self.metadata_source.metadata_of(token_id)

        price = price_info.price if price_info else None
        if price is None and metadata is not None:
            price = metadata.price_usd
        if metadata is not None and metadata.market_cap:
            market_cap = metadata.market_cap
        elif price:
            market_cap = price * DEFAULT_TOKEN_SUPPLY
        else:
            market_cap = None
        return metadata, price, market_cap

    async def _apply_group(self, account: str, group: SwapGroup) -> Optional[GroupAlert]:
        """Enriches, records and ledgers one group, then builds its alert payload."""
        token_id = group.token_id
        metadata, price, market_cap = await self._enrich(token_id)

        entry: Optional[LedgerEntry] = await self.repository.get_ledger_entry(account, token_id)
        balance_before = entry.balance if entry else 0.0
        balance_after = balance_before
        is_first_buy = False
        is_complete_exit = False
        applied: Optional[SwapGroup] = None

        for raw_event in group.events:
            event = raw_event.with_market(price, market_cap)
            update = apply_event(entry, event)
            stored_balance = await self.repository.apply_swap(
                account, event, is_first_buy=update.is_first_buy, price=price,
            )
            if stored_balance is None:
                logger.debug("Swap %s already recorded", event.signature[:16])
                continue
            balance_after = stored_balance
            entry = update.entry
            is_first_buy = is_first_buy or update.is_first_buy
            is_complete_exit = is_complete_exit or update.is_complete_exit
            if applied is None:
                applied = SwapGroup.start(event)
            else:
                applied.add(event)

        if applied is None:
            return None

        logger.info(
            "%s %s: balance %.6f -> %.6f | first buy: %s | complete exit: %s",
            self.account_name(account), token_id[:8], balance_before, balance_after,
            is_first_buy, is_complete_exit,
        )

        alert = GroupAlert(
            account=account,
            account_name=self.account_name(account),
            group=applied,
            metadata=metadata,
            price=price,
            market_cap=market_cap,
            balance_before=balance_before,
            balance_after=balance_after,
            is_first_buy=is_first_buy,
            is_complete_exit=is_complete_exit,
        )
        await self._analyze(alert, entry)
        return alert

    async def _analyze(self, alert: GroupAlert, entry: Optional[LedgerEntry]) -> None:
        group = alert.group
        in_group = set(group.signatures)
        token_history = await self.repository.get_swap_history(alert.account, alert.token_id)

        if group.sells:
            alert.pnl = group_pnl(token_history, group)
            if alert.pnl is None or not alert.pnl.available:
                fallback = [average_cost_pnl(entry, sell) for sell in group.sells]
                alert.pnl = combine_results([result for result in fallback if result is not None]) or alert.pnl
            alert.hold_time = hold_time(token_history, group.sells[-1])

        alert.flips = detect_flips(group)

        if group.buys:
            prior = [event for event in await self.repository.get_account_history(alert.account)
                     if event.signature not in in_group]
            stats = MarketCapStats.from_history(prior)
            alert.market_cap_assessment = assess_market_cap(alert.market_cap, stats)
            alert.deviations.extend(detect_market_cap_deviations(alert.market_cap, stats))
            behaviour = BuyBehaviour.from_history(prior)
            for buy in group.buys:
                earlier = [event for event in token_history if event.signature != buy.signature]
                alert.deviations.extend(detect_buy_deviations(buy, behaviour, earlier))

        if alert.is_first_buy:
            accounts = await self.repository.get_accounts_for_token(alert.token_id)
            alert.kol_accounts = accounts
            alert.kol_count = len(accounts)
            alert.other_kols = [self.account_name(other) for other in accounts if other != alert.account]

    async def _decide(self, alert: GroupAlert) -> str:
        """Routes an analysed group to the pending buffer, the notifier or nowhere."""
        name = alert.account_name
        if alert.group.sells and self.pending.attach_sell(alert):
            logger.info("Folded %s sell of %s into its pending buy alert", name, alert.symbol)
            return ATTACHED

        alertable = alert.is_first_buy or alert.is_complete_exit or self.config.alert_all_swaps
        if not alertable:
            logger.info("No alert for %s %s: neither a first buy nor a complete exit", name, alert.symbol)
            return SKIPPED

        if alert.group.is_pure_buy:
            self.pending.enqueue(alert)
            logger.info("Holding %s buy of %s for %ss", name, alert.symbol, self.pending.delay)
            return QUEUED

        await self.emit(alert)
        return EMITTED

    # --- Emission ---

    async def emit(self, alert: GroupAlert):
        """Sends an alert to every interested subscriber and marks its swaps alerted."""
        try:
            subscribers = await self.repository.fetch_subscribers()
            kols = alert.kol_accounts if alert.is_multi_kol_buy else []
            chat_ids = [s.chat_id for s in subscribers if s.is_interested(alert.account, alert.token_id, kols)]
            if not chat_ids:
                logger.info("No subscribers track %s or %s", alert.account_name, alert.symbol)

            report = await self.notifier.emit(chat_ids, render_group_alert(alert))
            for chat_id in report.unreachable:
                logger.warning("Deactivating unreachable subscriber %s", chat_id)
                await self.repository.deactivate_subscriber(chat_id)
            if report.any_delivered:
                self.alerts_sent += 1
            return report
        finally:
            await self.repository.mark_alerted(alert.group.signatures, alert.account, alert.token_id)

    async def sweep_pending_buy_alerts(self, now: Optional[float] = None) -> int:
        """Emits every held buy alert whose delay has elapsed.

        Accounts with a due alert get one more pass first, so a sell that
        landed inside the delay is folded in even if no poll has seen it yet.
        """
        for account in dict.fromkeys(entry.alert.account for entry in self.pending.due(now)):
            try:
                await self.process_once(account)
            except Exception as e:
                logger.exception("Pre-flush pass failed for %s: %s", self.account_name(account), e)

        emitted = 0
        for entry in self.pending.pop_due(now):
            try:
                await self.emit(PendingBuyBuffer.merge(entry))
                emitted += 1
            except Exception as e:
                logger.exception("Failed to emit pending alert for %s: %s", entry.alert.symbol, e)
        return emitted
