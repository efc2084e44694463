#!/usr/bin/env python3
"""Turns Helius enhanced-transaction payloads into signed balance deltas."""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from analysis.models import (
    NativeTransfer,
    RawTransaction,
    SwapMetadata,
    TokenTransfer,
    TransferDeltas,
)
from constants import IGNORED_MINTS, LAMPORTS_PER_SOL


class MalformedTransactionError(ValueError):
    """A transaction payload is missing its signature or has unusable transfers."""


def _signature_field(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get('signature')


def _signature_from_signatures_list(payload: Dict[str, Any]) -> Optional[str]:
    inner = payload.get('transaction')
    if isinstance(inner, dict):
        signatures = inner.get('signatures')
        if isinstance(signatures, list) and signatures:
            return signatures[0]
    return None


def _signature_from_inner_transaction(payload: Dict[str, Any]) -> Optional[str]:
    inner = payload.get('transaction')
    if isinstance(inner, dict):
        return inner.get('signature')
    return None


def _signature_from_tx_hash(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get('txHash')


SIGNATURE_STRATEGIES: List[Callable[[Dict[str, Any]], Optional[str]]] = [
    _signature_field,
    _signature_from_signatures_list,
    _signature_from_inner_transaction,
    _signature_from_tx_hash,
]


def extract_signature(payload: Any) -> Optional[str]:
    """Try each known signature location in turn."""
    if not isinstance(payload, dict):
        return None
    for strategy in SIGNATURE_STRATEGIES:
        value = strategy(payload)
        if isinstance(value, str) and value:
            return value
    return None


def extract_timestamp(payload: Any) -> Optional[int]:
    """Block time of a payload, or None when absent or unreadable."""
    if not isinstance(payload, dict):
        return None
    raw_ts = _first_present(payload, 'timestamp', 'blockTime')
    try:
        return int(float(raw_ts)) if raw_ts is not None else None
    except (TypeError, ValueError):
        return None


def _to_float(value: Any, field_name: str, signature: str) -> float:
    if value is None or value == '':
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedTransactionError(
            f"Transaction {signature[:16]} has non-numeric {field_name}: {value!r}"
        ) from exc


def _first_present(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ''):
            return value
    return None


def _parse_native_transfers(entries: Iterable[Any], signature: str) -> Tuple[NativeTransfer, ...]:
    transfers = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            raise MalformedTransactionError(f"Transaction {signature[:16]} has a non-object native transfer")
        lamports = _to_float(entry.get('amount'), 'native amount', signature)
        transfers.append(
            NativeTransfer(
                from_account=_first_present(entry, 'fromUserAccount', 'from') or '',
                to_account=_first_present(entry, 'toUserAccount', 'to') or '',
                amount=lamports / LAMPORTS_PER_SOL,
            )
        )
    return tuple(transfers)


def _parse_token_transfers(entries: Iterable[Any], signature: str) -> Tuple[TokenTransfer, ...]:
    transfers = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            raise MalformedTransactionError(f"Transaction {signature[:16]} has a non-object token transfer")
        mint = _first_present(entry, 'mint', 'tokenAddress')
        if not mint:
            continue
        transfers.append(
            TokenTransfer(
                from_account=_first_present(entry, 'fromUserAccount', 'from') or '',
                to_account=_first_present(entry, 'toUserAccount', 'to') or '',
                mint=mint,
                amount=_to_float(_first_present(entry, 'tokenAmount', 'amount'), 'token amount', signature),
            )
        )
    return tuple(transfers)


def _parse_swap_metadata(payload: Dict[str, Any], signature: str) -> Optional[SwapMetadata]:
    events = payload.get('events')
    if not isinstance(events, dict):
        return None
    swap = events.get('swap')
    if not isinstance(swap, dict) or not swap:
        return None

    native_input = swap.get('nativeInput') or {}
    native_output = swap.get('nativeOutput') or {}

    def _sol(entry: Dict[str, Any]) -> Optional[float]:
        if not isinstance(entry, dict) or entry.get('amount') in (None, ''):
            return None
        return _to_float(entry.get('amount'), 'swap native amount', signature) / LAMPORTS_PER_SOL

    inner_outputs: List[TokenTransfer] = []
    for inner in swap.get('innerSwaps') or []:
        if isinstance(inner, dict):
            inner_outputs.extend(_parse_token_transfers(inner.get('tokenOutputs') or [], signature))

    return SwapMetadata(
        native_input_account=native_input.get('account') if isinstance(native_input, dict) else None,
        native_input_amount=_sol(native_input),
        native_output_account=native_output.get('account') if isinstance(native_output, dict) else None,
        native_output_amount=_sol(native_output),
        inner_token_outputs=tuple(inner_outputs),
    )


def parse_transaction(payload: Any) -> RawTransaction:
    """Builds a RawTransaction from one Helius payload or raises MalformedTransactionError."""
    if not isinstance(payload, dict):
        raise MalformedTransactionError(f"Transaction payload is not an object: {type(payload).__name__}")

    signature = extract_signature(payload)
    if not signature:
        raise MalformedTransactionError(
            f"Transaction missing signature. Keys: {', '.join(sorted(payload.keys()))}"
        )

    raw_ts = _first_present(payload, 'timestamp', 'blockTime')
    if raw_ts is None:
        raise MalformedTransactionError(f"Transaction {signature[:16]} has no block time")
    timestamp = int(_to_float(raw_ts, 'timestamp', signature))

    failed = payload.get('type') == 'FAILED' or bool(payload.get('transactionError')) or bool(payload.get('error'))

    return RawTransaction(
        signature=signature,
        timestamp=timestamp,
        description=payload.get('description') or None,
        native_transfers=_parse_native_transfers(payload.get('nativeTransfers'), signature),
        token_transfers=_parse_token_transfers(payload.get('tokenTransfers'), signature),
        failed=failed,
        swap=_parse_swap_metadata(payload, signature),
    )


def normalize_transfers(tx: RawTransaction, account: str) -> Optional[TransferDeltas]:
    """Net native and per-mint token deltas of `account`, or None without transfers."""
    if not tx.native_transfers and not tx.token_transfers:
        return None

    account_lower = account.lower()
    native_delta = 0.0
    native_inflows: List[float] = []
    for transfer in tx.native_transfers:
        if transfer.from_account.lower() == account_lower:
            native_delta -= transfer.amount
        if transfer.to_account.lower() == account_lower:
            native_delta += transfer.amount
            native_inflows.append(transfer.amount)

    token_deltas: Dict[str, float] = defaultdict(float)
    for transfer in tx.token_transfers:
        if transfer.mint.lower() in IGNORED_MINTS:
            continue
        if transfer.from_account.lower() == account_lower:
            token_deltas[transfer.mint] -= transfer.amount
        if transfer.to_account.lower() == account_lower:
            token_deltas[transfer.mint] += transfer.amount

    return TransferDeltas(
        native_delta=native_delta,
        token_deltas=dict(token_deltas),
        native_inflows=native_inflows,
    )
