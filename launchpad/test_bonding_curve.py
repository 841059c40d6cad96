"""
Test Suite: Bonding Curve Engine

Covers the buy/sell formulas, bootstrap pricing, fee-on-output, error
classification, simulation isolation and the optimal trade size search.
"""
import threading
from decimal import Decimal, localcontext

import pytest

from launchpad.amm_state import CURVE_CONTEXT, VirtualPool
from launchpad.bonding_curve import BondingCurve
from launchpad.config import BondingCurveConfig
from launchpad.errors import (
    InsufficientReserveError,
    InsufficientTokensError,
    PoolNotInitializedError,
    ZeroAmountError,
)

TOLERANCE = Decimal('1e-60')


def assert_close(actual, expected, tolerance=TOLERANCE):
    assert abs(Decimal(actual) - Decimal(expected)) < tolerance, f"{actual} != {expected}"


def rounded(value: Decimal, places: str) -> Decimal:
    return value.quantize(Decimal(places))


@pytest.fixture
def curve():
    """Curve with the default 1% fee."""
    return BondingCurve(BondingCurveConfig.default())


@pytest.fixture
def pool():
    """1000 CNPY, 800,000 tokens, 200,000 already minted (price 0.00125)."""
    return VirtualPool(1000, 800000, 200000)


def snapshot(pool: VirtualPool) -> tuple:
    return (pool.cnpy_reserve, pool.token_reserve, pool.total_supply)


class TestConstruction:

    def test_custom_config(self):
        curve = BondingCurve(BondingCurveConfig(fee_rate_basis_points=200))
        assert curve.config.fee_rate_basis_points == 200

    def test_with_defaults(self):
        curve = BondingCurve.with_defaults()
        assert curve.config.fee_rate_basis_points == 100
        assert curve.config.initial_price == Decimal('0.01')

    def test_config_is_required(self):
        with pytest.raises(ValueError):
            BondingCurve(None)


class TestBuy:

    def test_buy_scenario_default_fee(self, curve, pool):
        """100 CNPY into (1000, 800000) pays 72000 tokens after the 1% fee."""
        result = curve.buy(pool, Decimal('100'))

        assert_close(result.amount_out, 72000)
        assert result.new_cnpy_reserve == Decimal('1100')
        assert_close(result.new_token_reserve, 728000)
        assert_close(result.new_total_supply, 272000)
        assert rounded(result.price, '1e-13') == Decimal('0.0013888888889')
        assert rounded(result.price_impact, '1e-7') == Decimal('11.1111111')

        new_pool = VirtualPool.from_trade(result)
        assert rounded(new_pool.current_price, '1e-12') == Decimal('0.001510989011')

    def test_buy_follows_formula(self, curve, pool):
        amount = Decimal('100')
        result = curve.buy(pool, amount)

        with localcontext(CURVE_CONTEXT):
            tokens_before_fee = (amount * pool.token_reserve) / (pool.cnpy_reserve + amount)
        expected = curve.config.apply_fee(tokens_before_fee)
        assert_close(result.amount_out, expected)

    def test_buy_with_two_percent_fee(self):
        """Fee comes off the tokens; the reserve still takes the full 50 CNPY."""
        config = BondingCurveConfig(fee_rate_basis_points=200)
        curve = BondingCurve(config)
        pool = VirtualPool(500, 400000, 100000)
        amount = Decimal('50')

        result = curve.buy(pool, amount)

        assert config.calculate_fee(amount) == Decimal('1')
        assert config.apply_fee(amount) == Decimal('49')
        assert result.new_cnpy_reserve == Decimal('550')
        assert rounded(result.amount_out, '1e-5') == Decimal('35636.36364')
        assert rounded(result.price, '1e-13') == Decimal('0.0014030612245')

    def test_bootstrap_buy_uses_initial_price(self):
        """Both reserves at 0: tokens = amount / initial_price, then the fee."""
        curve = BondingCurve(BondingCurveConfig(initial_price=Decimal('0.05')))
        pool = VirtualPool(0, 0, 0)

        result = curve.buy(pool, Decimal('100'))

        assert result.amount_out == Decimal('1980')
        assert result.new_cnpy_reserve == Decimal('100')
        assert result.new_total_supply == Decimal('1980')
        # Price impact is measured against the initial price
        assert rounded(result.price_impact, '1e-8') == Decimal('1.01010101')

    def test_bootstrap_buy_leaves_negative_token_reserve(self):
        """The bootstrap buy subtracts from a zero token reserve."""
        curve = BondingCurve(BondingCurveConfig(initial_price=Decimal('0.05')))
        result = curve.buy(VirtualPool(0, 0, 0), Decimal('100'))

        assert result.new_token_reserve == Decimal('-1980')
        with pytest.raises(InsufficientReserveError):
            VirtualPool.from_trade(result).validate()

    def test_buy_is_monotonic(self, curve, pool):
        result = curve.buy(pool, Decimal('250'))

        assert result.new_cnpy_reserve > pool.cnpy_reserve
        assert result.new_total_supply > pool.total_supply
        assert result.new_token_reserve < pool.token_reserve
        assert result.price > 0

    def test_buy_does_not_mutate_pool(self, curve, pool):
        before = snapshot(pool)
        curve.buy(pool, Decimal('100'))
        assert snapshot(pool) == before

    def test_buy_is_deterministic(self, curve, pool):
        first = curve.buy(pool, Decimal('123.456'))
        second = curve.buy(pool, Decimal('123.456'))
        assert first == second

    @pytest.mark.parametrize("amount", [0, Decimal('-100'), None, 'NaN', Decimal('Infinity'), 'abc'])
    def test_buy_rejects_non_positive_amounts(self, curve, pool, amount):
        with pytest.raises(ZeroAmountError):
            curve.buy(pool, amount)

    def test_buy_one_sided_pool(self, curve):
        invalid_pool = VirtualPool(0, 1000, 100)
        with pytest.raises(InsufficientReserveError):
            curve.buy(invalid_pool, Decimal('100'))

    def test_buy_missing_field(self, curve):
        with pytest.raises(PoolNotInitializedError):
            curve.buy(VirtualPool(1000, None, 0), Decimal('100'))

    def test_buy_negative_supply(self, curve):
        with pytest.raises(PoolNotInitializedError):
            curve.buy(VirtualPool(1000, 800000, -1), Decimal('100'))

    @pytest.mark.parametrize("pool", [
        VirtualPool('NaN', 800000, 200000),
        VirtualPool(1000, 'Infinity', 200000),
        VirtualPool(1000, 800000, 'NaN'),
    ])
    def test_non_finite_pool(self, curve, pool):
        with pytest.raises(PoolNotInitializedError):
            curve.buy(pool, Decimal('100'))
        with pytest.raises(PoolNotInitializedError):
            curve.sell(pool, Decimal('1'))

    def test_pool_checked_before_amount(self, curve):
        with pytest.raises(InsufficientReserveError):
            curve.buy(VirtualPool(0, 1000, 100), 0)

    def test_full_fee_is_rejected(self, pool):
        curve = BondingCurve(BondingCurveConfig(fee_rate_basis_points=10000))
        with pytest.raises(InsufficientReserveError):
            curve.buy(pool, Decimal('100'))

    def test_float_amount_uses_decimal_repr(self, curve, pool):
        assert curve.buy(pool, 0.1) == curve.buy(pool, Decimal('0.1'))


class TestSell:

    def test_sell_scenario(self, curve):
        pool = VirtualPool(1200, 750000, 250000)

        result = curve.sell(pool, Decimal('5000'))

        assert rounded(result.amount_out, '1e-9') == Decimal('7.867549669')
        assert rounded(result.price, '1e-12') == Decimal('0.001573509934')
        assert result.new_total_supply == Decimal('245000')
        assert result.new_token_reserve == Decimal('755000')

    def test_sell_is_monotonic(self, curve, pool):
        result = curve.sell(pool, Decimal('1000'))

        assert result.amount_out > 0
        assert result.new_cnpy_reserve < pool.cnpy_reserve
        assert result.new_token_reserve > pool.token_reserve
        assert result.new_total_supply < pool.total_supply
        assert result.price > 0

    def test_sell_fee_leaves_the_reserve(self, curve, pool):
        """The pre-fee amount leaves the reserve; the seller gets the post-fee amount."""
        amount = Decimal('1000')
        result = curve.sell(pool, amount)

        with localcontext(CURVE_CONTEXT):
            cnpy_out = (amount * pool.cnpy_reserve) / (pool.token_reserve + amount)
            assert_close(result.new_cnpy_reserve, pool.cnpy_reserve - cnpy_out)
            assert_close(result.amount_out, curve.config.apply_fee(cnpy_out))

            drained = pool.cnpy_reserve - result.new_cnpy_reserve
            assert_close(drained - result.amount_out, curve.config.calculate_fee(cnpy_out))

    def test_sell_entire_supply(self, curve, pool):
        result = curve.sell(pool, pool.total_supply)

        assert result.new_total_supply == 0
        assert_close(result.amount_out, 198)
        assert_close(result.new_cnpy_reserve, 800)

    def test_sell_more_than_supply(self, curve, pool):
        with pytest.raises(InsufficientTokensError):
            curve.sell(pool, pool.total_supply + 1)

    def test_sell_from_bootstrap_pool(self, curve):
        with pytest.raises(InsufficientTokensError):
            curve.sell(VirtualPool(0, 0, 0), Decimal('1'))

    @pytest.mark.parametrize("amount", [0, Decimal('-100'), None, 'NaN', Decimal('Infinity'), 'abc'])
    def test_sell_rejects_non_positive_amounts(self, curve, pool, amount):
        with pytest.raises(ZeroAmountError):
            curve.sell(pool, amount)


class TestSimulation:

    def test_simulate_buy_leaves_pool_unchanged(self, curve, pool):
        before = snapshot(pool)
        result = curve.simulate_buy(pool, Decimal('100'))

        assert snapshot(pool) == before
        assert result == curve.buy(pool, Decimal('100'))

    def test_simulate_sell_leaves_pool_unchanged(self, curve, pool):
        before = snapshot(pool)
        curve.simulate_sell(pool, Decimal('1000'))
        assert snapshot(pool) == before

    def test_simulate_none_pool(self, curve):
        with pytest.raises(PoolNotInitializedError):
            curve.simulate_buy(None, Decimal('1'))

    def test_concurrent_callers_do_not_cross_talk(self, curve):
        pools = [VirtualPool(1000 + i, 800000, 200000) for i in range(8)]
        expected = [curve.buy(p, Decimal('100')) for p in pools]
        results = [None] * len(pools)

        def worker(i):
            for _ in range(50):
                results[i] = curve.simulate_buy(pools[i], Decimal('100'))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(pools))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == expected


class TestAnalytics:

    def test_get_amount_out_buy(self, curve, pool):
        assert_close(curve.get_amount_out(pool, Decimal('100'), True), 72000)

    def test_get_amount_out_sell(self, curve, pool):
        out = curve.get_amount_out(pool, Decimal('1000'), False)
        assert out == curve.sell(pool, Decimal('1000')).amount_out

    def test_get_amount_out_propagates_errors(self, curve, pool):
        with pytest.raises(ZeroAmountError):
            curve.get_amount_out(pool, 0, True)

    def test_calculate_slippage(self, curve, pool):
        # 72000 received against 80000 expected
        slippage = curve.calculate_slippage(pool, Decimal('100'), Decimal('80000'), True)
        assert_close(slippage, 10)

    def test_negative_slippage_when_output_beats_expectation(self, curve, pool):
        slippage = curve.calculate_slippage(pool, Decimal('100'), Decimal('60000'), True)
        assert slippage < 0

    def test_zero_expected_out(self, curve, pool):
        assert curve.calculate_slippage(pool, Decimal('100'), 0, True) == 0

    def test_price_after_buy(self, curve, pool):
        new_price = curve.estimate_price_after_trade(pool, Decimal('100'), True)

        assert new_price > pool.current_price
        assert rounded(new_price, '1e-12') == Decimal('0.001510989011')

    def test_price_after_sell(self, curve, pool):
        new_price = curve.estimate_price_after_trade(pool, Decimal('1000'), False)
        assert new_price < pool.current_price


class TestOptimalTradeSize:

    def test_ten_percent_boundary(self, curve, pool):
        step = pool.cnpy_reserve * Decimal('0.001')
        max_slippage = Decimal('10')

        size = curve.get_optimal_trade_size(pool, max_slippage, True)

        assert size > 0
        assert curve.simulate_buy(pool, size).price_impact <= max_slippage
        assert curve.simulate_buy(pool, size + step).price_impact > max_slippage

    def test_five_percent_buy(self, curve, pool):
        assert curve.get_optimal_trade_size(pool, Decimal('5'), True) == Decimal('39')

    def test_first_step_already_too_large(self, curve, pool):
        """10 CNPY moves the price 2.02%, so 1% returns one step below it."""
        assert curve.get_optimal_trade_size(pool, Decimal('1'), True) == Decimal('9')

    def test_five_percent_sell(self, curve, pool):
        size = curve.get_optimal_trade_size(pool, Decimal('5'), False)

        assert size == Decimal('33600')
        assert curve.simulate_sell(pool, size).price_impact <= 5

    def test_search_stops_on_error(self, pool):
        curve = BondingCurve(BondingCurveConfig(fee_rate_basis_points=10000))
        assert curve.get_optimal_trade_size(pool, Decimal('5'), True) == Decimal('10')

    def test_runs_to_bound_when_never_exceeded(self, curve, pool):
        size = curve.get_optimal_trade_size(pool, Decimal('1000000'), True)
        assert size >= pool.cnpy_reserve

    def test_bootstrap_pool_returns_zero(self, curve):
        assert curve.get_optimal_trade_size(VirtualPool(0, 0, 0), Decimal('5'), True) == 0

    @pytest.mark.parametrize("max_slippage", ['abc', None, 'NaN'])
    def test_invalid_max_slippage(self, curve, pool, max_slippage):
        with pytest.raises(ValueError):
            curve.get_optimal_trade_size(pool, max_slippage, True)

    def test_non_finite_bound(self, curve):
        with pytest.raises(PoolNotInitializedError):
            curve.get_optimal_trade_size(VirtualPool('NaN', 800000, 0), Decimal('5'), True)

    def test_pool_unchanged_by_search(self, curve, pool):
        before = snapshot(pool)
        curve.get_optimal_trade_size(pool, Decimal('10'), True)
        assert snapshot(pool) == before


class TestSequentialBuys:
    """Chained buys from a seeded pool, committing each result."""

    def test_chained_buys(self):
        curve = BondingCurve(BondingCurveConfig(fee_rate_basis_points=100, initial_price=Decimal('0.05')))
        pool = VirtualPool(100, 2000, 2000)
        amounts = [Decimal(100 * i) for i in range(1, 31)]

        last_price = pool.current_price
        minted = Decimal(0)
        with localcontext(CURVE_CONTEXT):
            for amount in amounts:
                result = curve.buy(pool, amount)
                minted += result.amount_out
                pool = VirtualPool.from_trade(result)

                assert pool.current_price > last_price
                last_price = pool.current_price

            assert pool.cnpy_reserve == Decimal(100) + sum(amounts)
            assert_close(pool.total_supply, Decimal(2000) + minted, Decimal('1e-50'))
            assert_close(pool.token_reserve + pool.total_supply, Decimal(4000), Decimal('1e-50'))
