import sqlite3
from unittest.mock import patch

import pytest

from analysis.models import BUY, SELL, SwapEvent
from storage import SQLiteRepository, Subscriber

KOL = 'KoLWaLLet1111111111111111111111111111111111'
OTHER_KOL = 'OtherKoL11111111111111111111111111111111111'
MINT = 'TokenMint11111111111111111111111111111111pump'


def _event(signature, timestamp, swap_type=BUY, tokens=100.0, native=1.0, market_cap=None):
    return SwapEvent(
        signature=signature,
        timestamp=timestamp,
        type=swap_type,
        token_id=MINT,
        token_amount=tokens,
        native_amount=native,
        price=0.0001,
        market_cap=market_cap,
    )


@pytest.mark.asyncio
async def test_cursor_round_trip(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "cursor.db")

    assert await repository.get_cursor(KOL) is None
    await repository.set_cursor(KOL, "sig-1")
    await repository.set_cursor(KOL, "sig-2")
    assert await repository.get_cursor(KOL) == "sig-2"
    assert await repository.get_cursor(OTHER_KOL) is None

    await repository.close()


@pytest.mark.asyncio
async def test_cursor_never_moves_to_older_transaction(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "cursor_order.db")

    assert await repository.set_cursor(KOL, "sig-b", 200) is True
    assert await repository.set_cursor(KOL, "sig-a", 100) is False
    assert await repository.get_cursor(KOL) == "sig-b"
    assert await repository.set_cursor(KOL, "sig-c", 300) is True
    assert await repository.get_cursor(KOL) == "sig-c"

    await repository.close()


@pytest.mark.asyncio
async def test_alerted_set_is_write_once(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "alerted.db")

    assert await repository.has_alerted("sig-1") is False
    await repository.mark_alerted(["sig-1", "sig-2"], KOL, MINT)
    await repository.mark_alerted(["sig-1"], KOL, MINT)
    assert await repository.has_alerted("sig-1") is True
    assert await repository.has_alerted("sig-2") is True
    assert await repository.has_alerted("sig-3") is False

    await repository.close()


@pytest.mark.asyncio
async def test_apply_ledger_delta_tracks_cost_and_first_buy(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "ledger.db")

    balance = await repository.apply_ledger_delta(
        KOL, MINT, 500.0, signature="buy-1", is_first_buy=True, price=0.002, native_amount=1.5, timestamp=10,
    )
    assert balance == 500.0
    balance = await repository.apply_ledger_delta(
        KOL, MINT, 100.0, signature="buy-2", is_first_buy=True, price=0.003, native_amount=0.5, timestamp=20,
    )
    assert balance == 600.0
    balance = await repository.apply_ledger_delta(KOL, MINT, -700.0, signature="sell-1")
    assert balance == -100.0

    entry = await repository.get_ledger_entry(KOL, MINT)
    assert entry.balance == -100.0
    assert entry.cost_basis == pytest.approx(2.0)
    assert entry.total_tokens_bought == 600.0
    assert entry.first_buy_signature == "buy-1"
    assert entry.first_buy_timestamp == 10
    assert entry.first_buy_price == 0.002

    await repository.close()


@pytest.mark.asyncio
async def test_ledger_entry_persists_across_connections(tmp_path):
    db_path = tmp_path / "persist.db"
    repository = SQLiteRepository(db_path=db_path)
    await repository.apply_ledger_delta(KOL, MINT, 42.0, signature="buy", is_first_buy=True, native_amount=1.0)
    await repository.close()

    reopened = SQLiteRepository(db_path=db_path)
    entry = await reopened.get_ledger_entry(KOL, MINT)
    assert entry.balance == 42.0
    assert await reopened.get_ledger_entry(OTHER_KOL, MINT) is None
    await reopened.close()


@pytest.mark.asyncio
async def test_accounts_for_token_only_counts_buyers(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "kols.db")

    await repository.apply_ledger_delta(KOL, MINT, 10.0, signature="a", is_first_buy=True, timestamp=1)
    await repository.apply_ledger_delta(OTHER_KOL, MINT, 10.0, signature="b", is_first_buy=True, timestamp=2)
    await repository.apply_ledger_delta("Seller111", MINT, -10.0, signature="c")

    assert await repository.get_accounts_for_token(MINT) == [KOL, OTHER_KOL]
    assert await repository.get_accounts_for_token("unknown") == []

    await repository.close()


@pytest.mark.asyncio
async def test_record_swap_is_idempotent_and_history_is_chronological(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "history.db")

    assert await repository.record_swap(KOL, _event("late", 30, SELL)) is True
    assert await repository.record_swap(KOL, _event("early", 10, market_cap=50_000)) is True
    assert await repository.record_swap(KOL, _event("early", 10)) is False
    assert await repository.has_swap("early") is True
    assert await repository.has_swap("missing") is False

    history = await repository.get_swap_history(KOL, MINT)
    assert [event.signature for event in history] == ["early", "late"]
    assert history[0].type == BUY
    assert history[0].market_cap == 50_000
    assert history[1].type == SELL

    assert await repository.get_swap_history(OTHER_KOL, MINT) == []
    assert [e.signature for e in await repository.get_account_history(KOL, limit=1)] == ["late"]

    await repository.close()


@pytest.mark.asyncio
async def test_apply_swap_records_and_updates_ledger_once(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "apply.db")

    balance = await repository.apply_swap(KOL, _event("buy-1", 10, tokens=500.0, native=1.5), is_first_buy=True, price=0.003)
    assert balance == 500.0
    assert await repository.apply_swap(KOL, _event("buy-1", 10, tokens=500.0), is_first_buy=True) is None
    assert await repository.apply_swap(KOL, _event("sell-1", 20, SELL, tokens=200.0)) == 300.0

    entry = await repository.get_ledger_entry(KOL, MINT)
    assert entry.balance == 300.0
    assert entry.first_buy_signature == "buy-1"
    assert entry.first_buy_price == 0.003
    assert [event.signature for event in await repository.get_swap_history(KOL, MINT)] == ["buy-1", "sell-1"]

    await repository.close()


@pytest.mark.asyncio
async def test_apply_swap_writes_nothing_when_ledger_write_fails(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "apply_rollback.db")

    with patch.object(repository, "_write_ledger_delta", side_effect=sqlite3.OperationalError("disk I/O error")):
        with pytest.raises(sqlite3.OperationalError):
            await repository.apply_swap(KOL, _event("buy-1", 10), is_first_buy=True)

    assert await repository.has_swap("buy-1") is False
    assert await repository.get_ledger_entry(KOL, MINT) is None

    assert await repository.apply_swap(KOL, _event("buy-1", 10), is_first_buy=True) == 100.0
    assert await repository.has_swap("buy-1") is True

    await repository.close()


@pytest.mark.asyncio
async def test_subscribers(tmp_path):
    repository = SQLiteRepository(db_path=tmp_path / "subscribers.db")

    await repository.upsert_subscriber(Subscriber(chat_id="1", tracked_accounts=[KOL]))
    await repository.upsert_subscriber(Subscriber(chat_id="2", tracked_tokens=[MINT]))
    await repository.upsert_subscriber(Subscriber(chat_id="1", tracked_accounts=[KOL, OTHER_KOL]))

    subscribers = await repository.fetch_subscribers()
    assert [s.chat_id for s in subscribers] == ["1", "2"]
    assert sorted(subscribers[0].tracked_accounts) == sorted([KOL, OTHER_KOL])
    assert subscribers[1].tracked_tokens == [MINT]

    await repository.deactivate_subscriber("2")
    assert [s.chat_id for s in await repository.fetch_subscribers()] == ["1"]
    inactive = [s for s in await repository.fetch_subscribers(active_only=False) if not s.subscribed]
    assert [s.chat_id for s in inactive] == ["2"]

    await repository.close()


def test_subscriber_interest():
    subscriber = Subscriber(chat_id="1", tracked_accounts=[OTHER_KOL], tracked_tokens=["tracked-mint"])

    assert subscriber.is_interested(OTHER_KOL, MINT)
    assert subscriber.is_interested(KOL, "tracked-mint")
    assert not subscriber.is_interested(KOL, MINT)
    assert subscriber.is_interested(KOL, MINT, kols=[KOL, OTHER_KOL])
    assert not Subscriber(chat_id="2", subscribed=False, tracked_accounts=[KOL]).is_interested(KOL, MINT)
