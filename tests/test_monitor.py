import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from analysis.models import BUY, SELL, GroupAlert, SwapEvent, SwapGroup, TokenMetadata, TokenPrice
from analysis.pending_alerts import PendingBuyBuffer
from bot.notifier import EmissionReport
from config import AppConfig
from monitor import ATTACHED, EMITTED, SKIPPED, KolMonitor, select_new_transactions
from services.helius_client import TransientFetchError
from storage import SQLiteRepository, Subscriber

KOL = 'KoLWaLLet1111111111111111111111111111111111'
OTHER_KOL = 'OtherKoL11111111111111111111111111111111111'
POOL = 'PooL111111111111111111111111111111111111111'
MINT = 'TokenMint11111111111111111111111111111111pump'

SOL = 1_000_000_000
T0 = 1_700_000_000


def _buy(signature, timestamp, account=KOL, tokens=1_000_000, sol=2.0):
    return {
        'signature': signature,
        'timestamp': timestamp,
        'nativeTransfers': [{'fromUserAccount': account, 'toUserAccount': POOL, 'amount': int(sol * SOL)}],
        'tokenTransfers': [{'fromUserAccount': POOL, 'toUserAccount': account, 'mint': MINT, 'tokenAmount': tokens}],
    }


def _sell(signature, timestamp, account=KOL, tokens=1_000_000, sol=2.5):
    return {
        'signature': signature,
        'timestamp': timestamp,
        'nativeTransfers': [{'fromUserAccount': POOL, 'toUserAccount': account, 'amount': int(sol * SOL)}],
        'tokenTransfers': [{'fromUserAccount': account, 'toUserAccount': POOL, 'mint': MINT, 'tokenAmount': tokens}],
    }


def _noop(signature, timestamp):
    return {'signature': signature, 'timestamp': timestamp}


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeTransactionSource:
    """Serves queued newest-first batches per account, repeating the last one."""

    def __init__(self):
        self.batches = {}

    def queue(self, account, *batches):
        self.batches.setdefault(account, []).extend(batches)

    async def fetch_recent_transactions(self, account, limit=50):
        batches = self.batches.get(account, [])
        if not batches:
            return []
        batch = batches.pop(0) if len(batches) > 1 else batches[0]
        if isinstance(batch, Exception):
            raise batch
        return list(batch)


class FakePriceSource:
    async def price_of(self, mint):
        return TokenPrice(price=0.000008)


class FakeMetadataSource:
    async def metadata_of(self, mint):
        return TokenMetadata(name='Pump Token', symbol='pump', market_cap=8_000)


def _config(**overrides):
    values = dict(
        kols={KOL: 'Ansem', OTHER_KOL: 'Cupsey'},
        interval=60,
        sweep_interval=10,
        fetch_limit=50,
        max_concurrent_accounts=4,
        fetch_timeout=10.0,
        lookup_delay=0,
        grouping_window=120,
        alert_delay=60,
        alert_all_swaps=False,
        telegram_enabled=False,
        db_path=':memory:',
        log_level='INFO',
        helius_api_key='mock_helius_key',
        telegram_bot_token=None,
        telegram_chat_id=None,
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def repository(tmp_path):
    return SQLiteRepository(db_path=tmp_path / 'monitor.db')


@pytest.fixture
def source():
    return FakeTransactionSource()


@pytest.fixture
def clock():
    return FakeClock(0)


@pytest.fixture
def notifier():
    notifier = AsyncMock()
    notifier.emit = AsyncMock(return_value=EmissionReport(delivered=['chat-1']))
    return notifier


@pytest.fixture
def monitor(repository, source, clock, notifier):
    return KolMonitor(
        _config(),
        source,
        FakePriceSource(),
        FakeMetadataSource(),
        repository,
        notifier,
        pending=PendingBuyBuffer(60, clock=clock),
    )


@pytest.fixture
def rendered():
    alerts = []

    def _render(alert):
        alerts.append(alert)
        return f"alert for {alert.account_name}"

    with patch('monitor.render_group_alert', side_effect=_render):
        yield alerts


async def _subscribe(repository, chat_id='chat-1', accounts=(KOL,)):
    await repository.upsert_subscriber(Subscriber(chat_id=chat_id, tracked_accounts=list(accounts)))


def test_select_new_transactions_stops_at_cursor():
    batch = [_noop('c', 3), {'no': 'signature'}, _noop('b', 2), _noop('a', 1)]

    new, newest, found = select_new_transactions(batch, 'b')

    assert [payload['signature'] for payload in new] == ['c']
    assert newest['signature'] == 'c'
    assert found is True

    new, _, found = select_new_transactions(batch, None)
    assert [payload['signature'] for payload in new] == ['a', 'b', 'c']
    assert found is False


@pytest.mark.asyncio
async def test_quick_round_trip_emits_one_mixed_alert(monitor, repository, source, notifier, rendered):
    await _subscribe(repository)
    source.queue(KOL, [_sell('sell-1', T0 + 10), _buy('buy-1', T0)])

    summary = await monitor.process_once(KOL)

    assert summary.swaps == 2
    assert summary.groups == 1
    assert summary.emitted == 1
    notifier.emit.assert_awaited_once_with(['chat-1'], 'alert for Ansem')

    alert = rendered[0]
    assert alert.group.is_mixed
    assert alert.is_first_buy
    assert alert.is_complete_exit
    assert alert.balance_after == pytest.approx(0)
    assert alert.pnl.pnl == pytest.approx(0.5)
    assert alert.pnl.pnl_percent == pytest.approx(25.0)
    assert alert.hold_time == 10
    assert alert.flips.detected
    assert alert.flips.fastest == 10
    assert alert.flips.total_pnl == pytest.approx(0.5)
    assert alert.market_cap == 8_000
    assert alert.market_cap_assessment.very_low

    assert await repository.get_cursor(KOL) == 'sell-1'
    assert await repository.has_alerted('buy-1')
    assert await repository.has_alerted('sell-1')
    assert monitor.alerts_sent == 1


@pytest.mark.asyncio
async def test_replaying_processed_history_changes_nothing(monitor, repository, source, notifier, rendered):
    await _subscribe(repository)
    source.queue(KOL, [_sell('sell-1', T0 + 10), _buy('buy-1', T0)])
    await monitor.process_once(KOL)
    entry_before = await repository.get_ledger_entry(KOL, MINT)

    await repository.set_cursor(KOL, 'signature-from-long-ago')
    summary = await monitor.process_once(KOL)

    assert summary.new_transactions == 2
    assert summary.swaps == 0
    assert notifier.emit.await_count == 1
    assert await repository.get_ledger_entry(KOL, MINT) == entry_before
    assert await repository.get_cursor(KOL) == 'sell-1'


@pytest.mark.asyncio
async def test_cursor_does_not_move_back_to_older_batch(monitor, repository, source):
    source.queue(
        KOL,
        [_noop('b', T0 + 2), _noop('a', T0 + 1)],
        [_noop('c', T0 + 3), _noop('b', T0 + 2), _noop('a', T0 + 1)],
        [_noop('b', T0 + 2), _noop('a', T0 + 1)],
    )

    await monitor.process_once(KOL)
    assert await repository.get_cursor(KOL) == 'b'

    summary = await monitor.process_once(KOL)
    assert summary.new_transactions == 1
    assert await repository.get_cursor(KOL) == 'c'

    await monitor.process_once(KOL)
    assert await repository.get_cursor(KOL) == 'c'


@pytest.mark.asyncio
async def test_sell_inside_delay_folds_into_pending_buy(monitor, repository, source, clock, notifier, rendered):
    await _subscribe(repository)
    source.queue(
        KOL,
        [_buy('buy-1', T0)],
        [_sell('sell-1', T0 + 30), _buy('buy-1', T0)],
    )

    first = await monitor.process_once(KOL)
    assert first.queued == 1
    notifier.emit.assert_not_awaited()

    clock.now = 30
    second = await monitor.process_once(KOL)
    assert second.emitted == 0
    assert second.queued == 0
    notifier.emit.assert_not_awaited()

    assert await monitor.sweep_pending_buy_alerts(now=59) == 0
    assert await monitor.sweep_pending_buy_alerts(now=60) == 1

    notifier.emit.assert_awaited_once()
    merged = rendered[0]
    assert merged.group.signatures == ['buy-1', 'sell-1']
    assert merged.is_first_buy
    assert merged.is_complete_exit
    assert merged.pnl.pnl == pytest.approx(0.5)
    assert merged.flips.fastest == 30
    assert await repository.has_alerted('sell-1')
    assert len(monitor.pending) == 0


def _sell_alert(signature, timestamp):
    event = SwapEvent(
        signature=signature,
        timestamp=timestamp,
        type=SELL,
        token_id=MINT,
        token_amount=1_000_000,
        native_amount=2.5,
    )
    return GroupAlert(account=KOL, account_name='Ansem', group=SwapGroup.start(event))


@pytest.mark.asyncio
async def test_decide_outcomes(monitor, source):
    source.queue(KOL, [_buy('buy-1', T0)])
    await monitor.process_once(KOL)
    assert len(monitor.pending) == 1

    assert await monitor._decide(_sell_alert('sell-1', T0 + 5)) == ATTACHED

    late_sell = _sell_alert('sell-2', T0 + 500)
    assert await monitor._decide(late_sell) == SKIPPED

    late_sell.is_complete_exit = True
    assert await monitor._decide(late_sell) == EMITTED
    assert len(monitor.pending) == 1


@pytest.mark.asyncio
async def test_multi_kol_buy_reaches_subscribers_of_any_participant(monitor, repository, source, notifier, rendered):
    await _subscribe(repository, 'chat-1', accounts=[KOL])
    await _subscribe(repository, 'chat-2', accounts=['SomeoneElse1111111111111111111111111111111'])
    source.queue(KOL, [_buy('buy-1', T0)])
    source.queue(OTHER_KOL, [_buy('buy-2', T0 + 5, account=OTHER_KOL)])

    await monitor.process_once(KOL)
    await monitor.process_once(OTHER_KOL)
    assert await monitor.sweep_pending_buy_alerts(now=60) == 2

    first, second = rendered
    assert first.kol_count == 1
    assert not first.is_multi_kol_buy
    assert second.account == OTHER_KOL
    assert second.kol_count == 2
    assert second.kol_accounts == [KOL, OTHER_KOL]
    assert second.other_kols == ['Ansem']
    assert [call.args[0] for call in notifier.emit.await_args_list] == [['chat-1'], ['chat-1']]


@pytest.mark.asyncio
async def test_transient_fetch_failure_aborts_pass(monitor, repository, source, notifier):
    await repository.set_cursor(KOL, 'known', T0)
    source.queue(KOL, TransientFetchError('HTTP 429'))

    summary = await monitor.process_once(KOL)

    assert summary.aborted
    assert await repository.get_cursor(KOL) == 'known'
    notifier.emit.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_transaction_is_skipped(monitor, repository, source):
    broken = _buy('broken', T0 + 1)
    broken['tokenTransfers'][0]['tokenAmount'] = 'lots'
    source.queue(KOL, [broken, _buy('buy-1', T0)])

    summary = await monitor.process_once(KOL)

    assert summary.new_transactions == 2
    assert summary.swaps == 1
    assert summary.queued == 1
    assert await repository.get_cursor(KOL) == 'broken'


@pytest.mark.asyncio
async def test_unreachable_subscriber_is_deactivated(monitor, repository, source, notifier, rendered):
    await _subscribe(repository)
    notifier.emit.return_value = EmissionReport(unreachable=['chat-1'])
    source.queue(KOL, [_sell('sell-1', T0 + 10), _buy('buy-1', T0)])

    await monitor.process_once(KOL)

    assert await repository.fetch_subscribers() == []
    assert monitor.alerts_sent == 0
    assert await repository.has_alerted('buy-1')


@pytest.mark.asyncio
async def test_failed_sweep_emission_drops_entry_and_marks_alerted(monitor, repository, source, notifier, rendered):
    await _subscribe(repository)
    notifier.emit.side_effect = RuntimeError('network down')
    source.queue(KOL, [_buy('buy-1', T0)])
    await monitor.process_once(KOL)

    assert await monitor.sweep_pending_buy_alerts(now=60) == 0

    assert len(monitor.pending) == 0
    assert await repository.has_alerted('buy-1')


@pytest.mark.asyncio
async def test_poll_all_isolates_account_failures(monitor, repository, source):
    source.queue(KOL, RuntimeError('boom'))
    source.queue(OTHER_KOL, [_buy('buy-2', T0, account=OTHER_KOL)])

    results = await monitor.poll_all()

    assert results[0] is None
    assert results[1].swaps == 1
    assert 'boom' in monitor.last_error
    assert monitor.last_poll_time is not None
    assert await repository.get_cursor(OTHER_KOL) == 'buy-2'


@pytest.mark.asyncio
async def test_partial_sell_is_not_alerted(monitor, repository, source, notifier, rendered):
    await _subscribe(repository)
    source.queue(
        KOL,
        [_buy('buy-1', T0)],
        [_buy('buy-1', T0)],
        [_sell('sell-1', T0 + 600, tokens=400_000, sol=1.0), _buy('buy-1', T0)],
    )
    await monitor.process_once(KOL)
    await monitor.sweep_pending_buy_alerts(now=60)

    summary = await monitor.process_once(KOL)

    assert summary.swaps == 1
    assert summary.emitted == 0
    assert notifier.emit.await_count == 1
    entry = await repository.get_ledger_entry(KOL, MINT)
    assert entry.balance == pytest.approx(600_000)


@pytest.mark.asyncio
async def test_sweep_picks_up_sell_landed_since_last_poll(monitor, repository, source, notifier, rendered):
    await _subscribe(repository)
    source.queue(
        KOL,
        [_buy('buy-1', T0)],
        [_sell('sell-1', T0 + 30), _buy('buy-1', T0)],
    )
    await monitor.process_once(KOL)

    assert await monitor.sweep_pending_buy_alerts(now=60) == 1

    notifier.emit.assert_awaited_once()
    assert rendered[0].group.signatures == ['buy-1', 'sell-1']
    assert rendered[0].is_complete_exit
    assert await repository.has_alerted('sell-1')

    summary = await monitor.process_once(KOL)
    assert summary.swaps == 0
    notifier.emit.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_ledger_write_is_retried_on_next_pass(monitor, repository, source):
    source.queue(KOL, [_buy('buy-1', T0)])
    write = repository._write_ledger_delta
    calls = []

    def _fail_first(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise sqlite3.OperationalError('database is locked')
        return write(*args, **kwargs)

    with patch.object(repository, '_write_ledger_delta', side_effect=_fail_first):
        with pytest.raises(sqlite3.OperationalError):
            await monitor.process_once(KOL)

        assert await repository.get_cursor(KOL) is None
        assert not await repository.has_swap('buy-1')

        summary = await monitor.process_once(KOL)

    assert summary.swaps == 1
    entry = await repository.get_ledger_entry(KOL, MINT)
    assert entry.balance == pytest.approx(1_000_000)
    assert await repository.has_swap('buy-1')


@pytest.mark.asyncio
async def test_buy_below_every_past_entry_is_flagged(monitor, repository, source, rendered):
    await _subscribe(repository)
    for n in range(1, 6):
        past = SwapEvent(
            signature=f'past-{n}',
            timestamp=T0 - 10_000 * n,
            type=BUY,
            token_id=f'PastMint{n}',
            token_amount=1_000,
            native_amount=1.0,
            market_cap=n * 100_000,
        )
        await repository.record_swap(KOL, past)
    source.queue(KOL, [_buy('buy-1', T0)])

    await monitor.process_once(KOL)
    await monitor.sweep_pending_buy_alerts(now=60)

    alert = rendered[0]
    assert alert.market_cap_assessment.percentile_rank == 0
    assert alert.market_cap_assessment.median == 300_000
    assert [d.type for d in alert.deviations if d.type.endswith('_entry_on_record')] == ['lowest_entry_on_record']
