"""
Virtual pool state for the launch bonding curve.

The pool tracks a CNPY reserve, a token reserve and the minted supply.
All quantities are Decimals evaluated in CURVE_CONTEXT.
"""
from dataclasses import dataclass, fields
from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_EVEN, localcontext
from typing import Optional

from launchpad.errors import InsufficientReserveError, PoolNotInitializedError

# 80 significant digits (~266 bits of mantissa)
DECIMAL_PRECISION = 80
CURVE_CONTEXT = Context(prec=DECIMAL_PRECISION, rounding=ROUND_HALF_EVEN)

ZERO = Decimal(0)


def to_decimal(value) -> Optional[Decimal]:
    """
    Convert an amount to Decimal without going through binary floats.

    Floats are converted through their shortest repr, so 0.05 becomes
    Decimal('0.05'). None passes through unchanged.

    Raises:
        InvalidOperation: if a string is not a decimal literal
        TypeError: for unsupported types
    """
    if value is None or isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a valid amount")
    if isinstance(value, float):
        return Decimal(repr(value))
    if isinstance(value, (int, str)):
        return Decimal(value)
    raise TypeError(f"Unsupported amount type: {type(value).__name__}")


class VirtualPool:
    """
    Reserve state of a bonding curve pool.

    Either both reserves are zero (bootstrap state, priced by the
    configured initial price) or both are strictly positive.
    The engine never mutates a pool; callers commit a trade by building
    a new pool from the TradeResult (see VirtualPool.from_trade).
    """

    def __init__(self, cnpy_reserve=ZERO, token_reserve=ZERO, total_supply=ZERO):
        """
        Args:
            cnpy_reserve: x - CNPY held by the pool
            token_reserve: y - tokens left in the virtual pool
            total_supply: tokens minted to traders
        """
        self.cnpy_reserve = to_decimal(cnpy_reserve)
        self.token_reserve = to_decimal(token_reserve)
        self.total_supply = to_decimal(total_supply)

    @classmethod
    def from_dict(cls, data: dict) -> 'VirtualPool':
        """Build a pool from stored fields. Missing fields stay None."""
        return cls(
            data.get('cnpy_reserve'),
            data.get('token_reserve'),
            data.get('total_supply'),
        )

    @classmethod
    def from_trade(cls, result: 'TradeResult') -> 'VirtualPool':
        """Pool state after committing a trade."""
        return cls(
            result.new_cnpy_reserve,
            result.new_token_reserve,
            result.new_total_supply,
        )

    def to_dict(self) -> dict:
        """
        Convert to dict for storage. Amounts are decimal strings.
        """
        return {
            'cnpy_reserve': _to_str(self.cnpy_reserve),
            'token_reserve': _to_str(self.token_reserve),
            'total_supply': _to_str(self.total_supply),
        }

    def copy(self) -> 'VirtualPool':
        """Independent clone of this pool."""
        return VirtualPool(self.cnpy_reserve, self.token_reserve, self.total_supply)

    @property
    def is_bootstrap(self) -> bool:
        """True when both reserves are exactly zero."""
        return self.cnpy_reserve == 0 and self.token_reserve == 0

    def validate(self):
        """
        Ensure the pool can be traded against.

        Raises:
            PoolNotInitializedError: a field is missing, not finite, or supply
                is negative
            InsufficientReserveError: one reserve is zero or negative outside
                the bootstrap state
        """
        if self.cnpy_reserve is None or self.token_reserve is None or self.total_supply is None:
            raise PoolNotInitializedError()

        if not all(v.is_finite() for v in (self.cnpy_reserve, self.token_reserve, self.total_supply)):
            raise PoolNotInitializedError()

        if not self.is_bootstrap and (self.cnpy_reserve <= 0 or self.token_reserve <= 0):
            raise InsufficientReserveError()

        if self.total_supply < 0:
            raise PoolNotInitializedError()

    @property
    def current_price(self) -> Decimal:
        """
        Price of 1 token in CNPY.

        Price = CNPY Reserve / Token Reserve, or 0 when the token reserve is 0.
        """
        if not self.token_reserve:
            return ZERO

        with localcontext(CURVE_CONTEXT):
            return self.cnpy_reserve / self.token_reserve

    def __eq__(self, other) -> bool:
        if not isinstance(other, VirtualPool):
            return NotImplemented
        return (
            self.cnpy_reserve == other.cnpy_reserve
            and self.token_reserve == other.token_reserve
            and self.total_supply == other.total_supply
        )

    def __repr__(self) -> str:
        return (
            f"VirtualPool("
            f"cnpy_reserve={self.cnpy_reserve}, "
            f"token_reserve={self.token_reserve}, "
            f"total_supply={self.total_supply}, "
            f"price={self.current_price if self.token_reserve is not None else None})"
        )


@dataclass(frozen=True)
class TradeResult:
    """Outcome of a single buy or sell. Never partially populated."""
    amount_out: Decimal          # tokens received (buy) or CNPY received (sell)
    new_cnpy_reserve: Decimal
    new_token_reserve: Decimal
    new_total_supply: Decimal
    price: Decimal               # effective CNPY per token for this trade
    price_impact: Decimal        # percent

    def to_dict(self) -> dict:
        return {f.name: str(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> 'TradeResult':
        values = {}
        for f in fields(cls):
            if f.name not in data:
                raise ValueError(f"Trade result missing field: {f.name}")
            try:
                value = to_decimal(data[f.name])
            except (InvalidOperation, TypeError):
                value = None
            if value is None or not value.is_finite():
                raise ValueError(f"Trade result field {f.name} is not a decimal: {data[f.name]!r}")
            values[f.name] = value
        return cls(**values)


def _to_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)
