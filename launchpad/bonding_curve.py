"""
Sum-style bonding curve over a virtual pool.

Buy:  dY = (amount_in * y) / (x + amount_in), fee taken from dY
Sell: dX = (token_amount_in * x) / (y + token_amount_in), fee taken from dX

Where x = CNPY reserve and y = token reserve. When both reserves are 0 the
curve is undefined and buys are priced at the configured initial price.

The engine is stateless: every operation reads the pool it is given and
returns a new TradeResult. Nothing here mutates a caller's pool, logs,
or retries.
"""
from decimal import Decimal, InvalidOperation, localcontext

from launchpad.amm_state import CURVE_CONTEXT, ZERO, TradeResult, VirtualPool, to_decimal
from launchpad.config import BondingCurveConfig, parse_decimal
from launchpad.errors import (
    BondingCurveError,
    InsufficientReserveError,
    InsufficientTokensError,
    PoolNotInitializedError,
    ZeroAmountError,
)

# Optimal trade size search: start at 1% of the bound, step by 0.1%
OPTIMAL_SEARCH_START = Decimal('0.01')
OPTIMAL_SEARCH_STEP = Decimal('0.001')


class BondingCurve:
    """
    Prices buys and sells against a VirtualPool.

    A single instance can be shared across threads; it holds nothing but
    its immutable config.
    """

    def __init__(self, config: BondingCurveConfig):
        if config is None:
            raise ValueError("Bonding curve requires a config, use BondingCurve.with_defaults()")
        self._config = config

    @classmethod
    def with_defaults(cls) -> 'BondingCurve':
        """Curve with the default 1% fee and 0.01 initial price."""
        return cls(BondingCurveConfig.default())

    @property
    def config(self) -> BondingCurveConfig:
        return self._config

    def buy(self, pool: VirtualPool, cnpy_amount_in) -> TradeResult:
        """
        Price a buy of tokens with CNPY (tokens are minted to the buyer).

        The full cnpy_amount_in enters the reserve; the fee is deducted from
        the tokens paid out.

        Raises:
            PoolNotInitializedError, InsufficientReserveError: invalid pool
            ZeroAmountError: amount is absent or not strictly positive
        """
        _validate_pool(pool)
        amount_in = _require_amount(cnpy_amount_in)

        x = pool.cnpy_reserve
        y = pool.token_reserve

        with localcontext(CURVE_CONTEXT):
            if pool.is_bootstrap:
                tokens_before_fee = amount_in / self._config.initial_price
                price_before = self._config.initial_price
            else:
                price_before = pool.current_price

                denominator = x + amount_in
                if denominator == 0:
                    raise InsufficientReserveError()

                tokens_before_fee = (amount_in * y) / denominator

            tokens_out = self._config.apply_fee(tokens_before_fee)
            # A 100% fee leaves nothing to price the trade with
            if tokens_out <= 0:
                raise InsufficientReserveError()

            new_cnpy_reserve = x + amount_in
            new_token_reserve = y - tokens_out
            new_total_supply = pool.total_supply + tokens_out

            effective_price = amount_in / tokens_out
            price_impact = _price_impact(price_before, effective_price)

        return TradeResult(
            amount_out=tokens_out,
            new_cnpy_reserve=new_cnpy_reserve,
            new_token_reserve=new_token_reserve,
            new_total_supply=new_total_supply,
            price=effective_price,
            price_impact=price_impact,
        )

    def sell(self, pool: VirtualPool, token_amount_in) -> TradeResult:
        """
        Price a sell of tokens for CNPY (tokens are burned).

        The pre-fee CNPY amount leaves the reserve while the seller is paid
        the post-fee amount. The difference is not credited anywhere.

        Raises:
            PoolNotInitializedError, InsufficientReserveError: invalid pool or
                the reserve cannot cover the payout
            ZeroAmountError: amount is absent or not strictly positive
            InsufficientTokensError: amount exceeds the total supply
        """
        _validate_pool(pool)
        amount_in = _require_amount(token_amount_in)

        if amount_in > pool.total_supply:
            raise InsufficientTokensError()

        x = pool.cnpy_reserve
        y = pool.token_reserve

        with localcontext(CURVE_CONTEXT):
            price_before = pool.current_price

            denominator = y + amount_in
            if denominator == 0:
                raise InsufficientReserveError()

            cnpy_out = (amount_in * x) / denominator
            cnpy_out_after_fee = self._config.apply_fee(cnpy_out)

            if cnpy_out_after_fee > x:
                raise InsufficientReserveError()

            new_cnpy_reserve = x - cnpy_out
            new_token_reserve = y + amount_in
            new_total_supply = pool.total_supply - amount_in

            if new_cnpy_reserve < 0 or new_total_supply < 0:
                raise InsufficientReserveError()

            effective_price = cnpy_out_after_fee / amount_in
            price_impact = _price_impact(price_before, effective_price)

        return TradeResult(
            amount_out=cnpy_out_after_fee,
            new_cnpy_reserve=new_cnpy_reserve,
            new_token_reserve=new_token_reserve,
            new_total_supply=new_total_supply,
            price=effective_price,
            price_impact=price_impact,
        )

    def simulate_buy(self, pool: VirtualPool, cnpy_amount_in) -> TradeResult:
        """Buy against a private copy of pool."""
        return self.buy(_copy_pool(pool), cnpy_amount_in)

    def simulate_sell(self, pool: VirtualPool, token_amount_in) -> TradeResult:
        """Sell against a private copy of pool."""
        return self.sell(_copy_pool(pool), token_amount_in)

    def simulate(self, pool: VirtualPool, amount_in, is_buy: bool) -> TradeResult:
        if is_buy:
            return self.simulate_buy(pool, amount_in)
        return self.simulate_sell(pool, amount_in)

    def get_amount_out(self, pool: VirtualPool, amount_in, is_buy: bool) -> Decimal:
        """Tokens (buy) or CNPY (sell) a trade would pay out."""
        return self.simulate(pool, amount_in, is_buy).amount_out

    def calculate_slippage(self, pool: VirtualPool, amount_in, expected_out, is_buy: bool) -> Decimal:
        """
        Percentage shortfall of the simulated output against expected_out.

        Slippage = (expected_out - actual_out) / expected_out * 100
        Returns 0 when expected_out is 0.
        """
        actual_out = self.get_amount_out(pool, amount_in, is_buy)

        expected_out = to_decimal(expected_out)
        if not expected_out:
            return ZERO

        with localcontext(CURVE_CONTEXT):
            return (expected_out - actual_out) / expected_out * 100

    def estimate_price_after_trade(self, pool: VirtualPool, amount_in, is_buy: bool) -> Decimal:
        """Spot price of the pool once the trade is committed."""
        result = self.simulate(pool, amount_in, is_buy)
        return VirtualPool.from_trade(result).current_price

    def get_optimal_trade_size(self, pool: VirtualPool, max_slippage, is_buy: bool) -> Decimal:
        """
        Largest trade whose price impact stays within max_slippage percent.

        Linear search: starts at 1% of the bound (CNPY reserve for buys,
        total supply for sells) and steps by 0.1% of the bound. Returns the
        size before the first step whose impact exceeds max_slippage. If a
        simulation fails the size reached at that point is returned.
        When the first candidate already exceeds max_slippage the result is
        one step below it, a size that was never simulated.
        """
        if pool is None:
            raise PoolNotInitializedError()

        max_amount = pool.cnpy_reserve if is_buy else pool.total_supply
        if max_amount is None or not max_amount.is_finite():
            raise PoolNotInitializedError()

        max_slippage = parse_decimal(max_slippage, "max_slippage")

        with localcontext(CURVE_CONTEXT):
            test_amount = max_amount * OPTIMAL_SEARCH_START
            step = max_amount * OPTIMAL_SEARCH_STEP

            while test_amount < max_amount:
                try:
                    result = self.simulate(pool, test_amount, is_buy)
                except BondingCurveError:
                    break

                if result.price_impact > max_slippage:
                    return test_amount - step

                test_amount += step

        return test_amount


def _validate_pool(pool: VirtualPool):
    if pool is None:
        raise PoolNotInitializedError()
    pool.validate()


def _copy_pool(pool: VirtualPool) -> VirtualPool:
    if pool is None:
        raise PoolNotInitializedError()
    return pool.copy()


def _require_amount(amount) -> Decimal:
    """Absent, unparseable, non-finite and non-positive amounts are all ZeroAmountError."""
    try:
        value = to_decimal(amount)
    except (InvalidOperation, TypeError):
        raise ZeroAmountError()

    if value is None or not value.is_finite() or value <= 0:
        raise ZeroAmountError()
    return value


def _price_impact(price_before: Decimal, price_after: Decimal) -> Decimal:
    """|price_after - price_before| / price_before * 100, 0 if price_before is 0."""
    if price_before == 0:
        return ZERO

    return abs((price_after - price_before) / price_before) * 100
