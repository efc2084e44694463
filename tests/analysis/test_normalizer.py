import pytest

from analysis.normalizer import (
    MalformedTransactionError,
    extract_signature,
    extract_timestamp,
    normalize_transfers,
    parse_transaction,
)
from constants import USDC_MINT, WSOL_MINT

KOL = 'KoLWaLLet1111111111111111111111111111111111'
POOL = 'PooL111111111111111111111111111111111111111'
MINT = 'TokenMint11111111111111111111111111111111pump'


def _payload(**overrides):
    payload = {
        'signature': 'sig-1',
        'timestamp': 1_700_000_000,
        'description': 'KOL swapped 2 SOL for 1000000 TOKEN',
        'nativeTransfers': [
            {'fromUserAccount': KOL, 'toUserAccount': POOL, 'amount': 2_000_000_000},
        ],
        'tokenTransfers': [
            {'fromUserAccount': POOL, 'toUserAccount': KOL, 'mint': MINT, 'tokenAmount': 1_000_000},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.mark.parametrize(
    'payload, expected',
    [
        ({'signature': 'direct'}, 'direct'),
        ({'transaction': {'signatures': ['from-list', 'other']}}, 'from-list'),
        ({'transaction': {'signature': 'nested'}}, 'nested'),
        ({'txHash': 'solscan-style'}, 'solscan-style'),
        ({'transaction': {'signatures': []}}, None),
        ('not-a-dict', None),
    ],
)
def test_extract_signature_strategies(payload, expected):
    assert extract_signature(payload) == expected


def test_extract_timestamp_is_lenient():
    assert extract_timestamp({'timestamp': 1_700_000_000}) == 1_700_000_000
    assert extract_timestamp({'blockTime': '1700000001'}) == 1_700_000_001
    assert extract_timestamp({'timestamp': 'soon'}) is None
    assert extract_timestamp({}) is None
    assert extract_timestamp(None) is None


def test_parse_transaction_converts_lamports_and_keeps_fields():
    tx = parse_transaction(_payload())

    assert tx.signature == 'sig-1'
    assert tx.timestamp == 1_700_000_000
    assert tx.failed is False
    assert tx.native_transfers[0].amount == pytest.approx(2.0)
    assert tx.token_transfers[0].mint == MINT
    assert tx.token_transfers[0].amount == 1_000_000


def test_parse_transaction_falls_back_to_block_time():
    payload = _payload()
    del payload['timestamp']
    payload['blockTime'] = 1_600_000_000

    assert parse_transaction(payload).timestamp == 1_600_000_000


def test_parse_transaction_rejects_missing_block_time():
    payload = _payload()
    del payload['timestamp']

    with pytest.raises(MalformedTransactionError, match="no block time"):
        parse_transaction(payload)


@pytest.mark.parametrize(
    'overrides',
    [{'type': 'FAILED'}, {'transactionError': {'InstructionError': [0, 'Custom']}}, {'error': 'boom'}],
)
def test_parse_transaction_marks_failures(overrides):
    assert parse_transaction(_payload(**overrides)).failed is True


def test_parse_transaction_rejects_missing_signature():
    payload = _payload()
    del payload['signature']

    with pytest.raises(MalformedTransactionError):
        parse_transaction(payload)


def test_parse_transaction_rejects_non_numeric_amount():
    payload = _payload(nativeTransfers=[{'fromUserAccount': KOL, 'toUserAccount': POOL, 'amount': 'lots'}])

    with pytest.raises(MalformedTransactionError):
        parse_transaction(payload)


def test_parse_transaction_reads_swap_event():
    payload = _payload(events={
        'swap': {
            'nativeInput': {'account': KOL, 'amount': '1500000000'},
            'innerSwaps': [
                {'tokenOutputs': [{'toUserAccount': KOL, 'mint': WSOL_MINT, 'tokenAmount': 0.25}]},
            ],
        }
    })

    swap = parse_transaction(payload).swap

    assert swap.native_input_account == KOL
    assert swap.native_input_amount == pytest.approx(1.5)
    assert swap.native_output_amount is None
    assert swap.inner_token_outputs[0].mint == WSOL_MINT


def test_normalize_transfers_matches_account_case_insensitively():
    payload = _payload(
        nativeTransfers=[
            {'fromUserAccount': KOL.lower(), 'toUserAccount': POOL, 'amount': 2_000_000_000},
            {'fromUserAccount': POOL, 'toUserAccount': KOL.upper(), 'amount': 5_000_000},
        ],
    )

    deltas = normalize_transfers(parse_transaction(payload), KOL)

    assert deltas.native_delta == pytest.approx(-1.995)
    assert deltas.native_inflows == [pytest.approx(0.005)]
    assert deltas.token_deltas == {MINT: 1_000_000}


def test_normalize_transfers_ignores_wrapped_sol_and_stablecoins():
    payload = _payload(tokenTransfers=[
        {'fromUserAccount': KOL, 'toUserAccount': POOL, 'mint': WSOL_MINT, 'tokenAmount': 2},
        {'fromUserAccount': POOL, 'toUserAccount': KOL, 'mint': USDC_MINT, 'tokenAmount': 300},
        {'fromUserAccount': POOL, 'toUserAccount': KOL, 'mint': MINT, 'tokenAmount': 10},
    ])

    deltas = normalize_transfers(parse_transaction(payload), KOL)

    assert deltas.token_deltas == {MINT: 10}


def test_normalize_transfers_without_transfers_returns_none():
    tx = parse_transaction({'signature': 'empty', 'timestamp': 1})

    assert normalize_transfers(tx, KOL) is None
