"""
msgpack encoding of pool state and trade results.

Amounts are packed as decimal strings so that no value ever passes
through a binary float on its way to storage.
"""
from decimal import Decimal, InvalidOperation

import msgpack

from launchpad.amm_state import TradeResult, VirtualPool

POOL_FIELDS = ('cnpy_reserve', 'token_reserve', 'total_supply')


def pool_to_bytes(pool: VirtualPool) -> bytes:
    return msgpack.packb(pool.to_dict(), use_bin_type=True)


def pool_from_bytes(data: bytes) -> VirtualPool:
    """
    Raises:
        ValueError: a field is missing or is not a decimal string
    """
    raw = _unpack_map(data)
    values = {}
    for name in POOL_FIELDS:
        if name not in raw:
            raise ValueError(f"Pool missing field: {name}")
        values[name] = _decode_amount(name, raw[name])
    return VirtualPool(**values)


def trade_result_to_bytes(result: TradeResult) -> bytes:
    return msgpack.packb(result.to_dict(), use_bin_type=True)


def trade_result_from_bytes(data: bytes) -> TradeResult:
    raw = _unpack_map(data)
    for name, value in raw.items():
        _decode_amount(name, value)
    return TradeResult.from_dict(raw)


def _unpack_map(data: bytes) -> dict:
    try:
        raw = msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Malformed encoding: {e}")
    if not isinstance(raw, dict):
        raise ValueError("Expected a map")
    return raw


def _decode_amount(name: str, value) -> Decimal:
    # Binary floats and ints are refused: every amount is stored as a string
    if not isinstance(value, str):
        raise ValueError(f"Field {name} must be a decimal string, got {type(value).__name__}")
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"Field {name} is not a decimal: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Field {name} is not finite: {value!r}")
    return amount
