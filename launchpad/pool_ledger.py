"""
In-memory pool ledger: applies bonding curve trades to committed pool state.

Each pool has its own lock. A trade reads the committed pool, prices it
with the stateless engine and commits the result under that lock, so two
trades against the same pool can never both start from the same snapshot.
Trades on different pools run in parallel.
"""
import time
import logging
import threading
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable, Optional

from launchpad.amm_state import ZERO, TradeResult, VirtualPool, to_decimal
from launchpad.bonding_curve import BondingCurve
from launchpad.config import LedgerConfig, parse_decimal
from launchpad.errors import (
    BondingCurveError,
    InsufficientBalanceError,
    LaunchpadError,
    PoolExistsError,
    PoolNotFoundError,
)
from launchpad.monitoring import Monitor
from launchpad.positions import UserPosition

logger = logging.getLogger(__name__)

BUY = 'buy'
SELL = 'sell'


@dataclass(frozen=True)
class TradeRequest:
    """A trade to apply, e.g. one matched deposit from a block."""
    chain_id: str
    user_id: str
    side: str
    amount: object

    def __post_init__(self):
        if self.side not in (BUY, SELL):
            raise ValueError(f"Invalid trade side: {self.side!r}")


@dataclass(frozen=True)
class TradeRecord:
    """A committed trade."""
    chain_id: str
    user_id: str
    trade_type: str
    cnpy_amount: Decimal
    token_amount: Decimal
    price: Decimal
    trading_fee: Decimal
    price_impact: Decimal
    cnpy_reserve_after: Decimal
    token_reserve_after: Decimal
    timestamp: int


@dataclass(frozen=True)
class PoolStats:
    total_volume_cnpy: Decimal
    total_transactions: int
    current_price: Decimal
    last_trade_price: Decimal
    market_cap: Decimal  # simplified: equals the CNPY reserve


class _PoolEntry:
    """Committed state of one pool. Guarded by its own lock."""

    def __init__(self, pool: VirtualPool, graduation_threshold: Decimal, max_trade_records: int):
        self.lock = threading.Lock()
        self.pool = pool
        self.graduation_threshold = graduation_threshold
        self.positions = {}
        self.trades = deque(maxlen=max_trade_records)
        self.price_history = []  # [(timestamp, spot price)]
        self.total_volume = ZERO
        self.total_transactions = 0
        self.last_trade_price = ZERO


class PoolLedger:
    def __init__(self, curve: BondingCurve, config: Optional[LedgerConfig] = None,
                 monitor: Optional[Monitor] = None, clock: Callable[[], float] = time.time):
        """
        Args:
            curve: Engine used to price every trade
            config: Ledger limits and graduation threshold
            monitor: Optional metrics sink
            clock: Source of trade timestamps
        """
        self.curve = curve
        self.config = config or LedgerConfig()
        self.monitor = monitor
        self.clock = clock
        self._pools = {}
        self._pools_lock = threading.Lock()

    # ==========================================================================
    # POOLS
    # ==========================================================================

    def create_pool(self, chain_id: str, cnpy_reserve=ZERO, token_reserve=ZERO,
                    total_supply=ZERO, graduation_threshold=None) -> VirtualPool:
        """
        Register a pool. Zero reserves start it in the bootstrap state.

        Raises:
            PoolExistsError: chain_id is already registered
            PoolNotInitializedError, InsufficientReserveError: invalid reserves
        """
        pool = VirtualPool(cnpy_reserve, token_reserve, total_supply)
        pool.validate()

        if graduation_threshold is None:
            graduation_threshold = self.config.graduation_threshold
        threshold = parse_decimal(graduation_threshold, "Graduation threshold")
        if threshold < 0:
            raise ValueError("Graduation threshold cannot be negative")

        with self._pools_lock:
            if chain_id in self._pools:
                raise PoolExistsError(f"Pool already exists for chain {chain_id}")
            self._pools[chain_id] = _PoolEntry(pool, threshold, self.config.max_trade_records)

        logger.info(f"Created pool for chain {chain_id}: {pool}")
        return pool.copy()

    def get_pool(self, chain_id: str) -> VirtualPool:
        """Copy of the committed pool."""
        entry = self._get_entry(chain_id)
        with entry.lock:
            return entry.pool.copy()

    def get_stats(self, chain_id: str) -> PoolStats:
        entry = self._get_entry(chain_id)
        with entry.lock:
            return PoolStats(
                total_volume_cnpy=entry.total_volume,
                total_transactions=entry.total_transactions,
                current_price=entry.pool.current_price,
                last_trade_price=entry.last_trade_price,
                market_cap=entry.pool.cnpy_reserve,
            )

    def is_graduation_eligible(self, chain_id: str) -> bool:
        """True once the CNPY reserve reaches a positive graduation threshold."""
        entry = self._get_entry(chain_id)
        with entry.lock:
            if entry.graduation_threshold <= 0:
                return False
            return entry.pool.cnpy_reserve >= entry.graduation_threshold

    # ==========================================================================
    # TRADING
    # ==========================================================================

    def buy(self, chain_id: str, user_id: str, cnpy_amount) -> TradeRecord:
        """
        Buy tokens with CNPY and commit the result.

        Raises:
            PoolNotFoundError: unknown chain_id
            BondingCurveError: the engine rejected the trade
        """
        entry = self._get_entry(chain_id)
        started = time.perf_counter()

        with entry.lock:
            try:
                result = self.curve.buy(entry.pool, cnpy_amount)
            except BondingCurveError as e:
                self._reject(BUY, chain_id, user_id, e)
                raise

            cnpy_in = to_decimal(cnpy_amount)
            now = int(self.clock())

            position = entry.positions.get(user_id)
            position = position.copy() if position else UserPosition(user_id, chain_id)
            position.record_buy(cnpy_in, result.amount_out, result.price, now)

            record = TradeRecord(
                chain_id=chain_id,
                user_id=user_id,
                trade_type=BUY,
                cnpy_amount=cnpy_in,
                token_amount=result.amount_out,
                price=result.price,
                trading_fee=self.curve.config.calculate_fee(cnpy_in),
                price_impact=result.price_impact,
                cnpy_reserve_after=result.new_cnpy_reserve,
                token_reserve_after=result.new_token_reserve,
                timestamp=now,
            )
            self._commit(entry, result, position, record)
            spot_price = entry.pool.current_price

        self._record_metrics(record, spot_price, started)
        logger.info(
            f"BUY chain={chain_id} user={user_id} cnpy_in={cnpy_in} "
            f"tokens_out={result.amount_out} impact={result.price_impact:.4f}%"
        )
        return record

    def sell(self, chain_id: str, user_id: str, token_amount) -> TradeRecord:
        """
        Sell tokens for CNPY and commit the result.

        Raises:
            PoolNotFoundError: unknown chain_id
            BondingCurveError: the engine rejected the trade
            InsufficientBalanceError: the user holds fewer tokens than token_amount
        """
        entry = self._get_entry(chain_id)
        started = time.perf_counter()

        with entry.lock:
            try:
                result = self.curve.sell(entry.pool, token_amount)
            except BondingCurveError as e:
                self._reject(SELL, chain_id, user_id, e)
                raise

            tokens_in = to_decimal(token_amount)

            position = entry.positions.get(user_id)
            if position is None or position.token_balance < tokens_in:
                error = InsufficientBalanceError(
                    f"User {user_id} holds {position.token_balance if position else 0} tokens, "
                    f"cannot sell {tokens_in}"
                )
                self._reject(SELL, chain_id, user_id, error)
                raise error

            now = int(self.clock())
            position = position.copy()
            position.record_sell(tokens_in, result.amount_out, result.price, now)

            record = TradeRecord(
                chain_id=chain_id,
                user_id=user_id,
                trade_type=SELL,
                cnpy_amount=result.amount_out,
                token_amount=tokens_in,
                price=result.price,
                trading_fee=self.curve.config.calculate_fee(result.amount_out),
                price_impact=result.price_impact,
                cnpy_reserve_after=result.new_cnpy_reserve,
                token_reserve_after=result.new_token_reserve,
                timestamp=now,
            )
            self._commit(entry, result, position, record)
            spot_price = entry.pool.current_price

        self._record_metrics(record, spot_price, started)
        logger.info(
            f"SELL chain={chain_id} user={user_id} tokens_in={tokens_in} "
            f"cnpy_out={result.amount_out} impact={result.price_impact:.4f}%"
        )
        return record

    def simulate_buy(self, chain_id: str, cnpy_amount) -> TradeResult:
        return self.curve.simulate_buy(self.get_pool(chain_id), cnpy_amount)

    def simulate_sell(self, chain_id: str, token_amount) -> TradeResult:
        return self.curve.simulate_sell(self.get_pool(chain_id), token_amount)

    def apply_batch(self, trades: Iterable[TradeRequest]) -> tuple[list, list]:
        """
        Apply trades in order. A failing trade is logged and skipped; the
        rest of the batch still runs.

        Returns:
            (applied TradeRecords, [(TradeRequest, error)])
        """
        applied = []
        failures = []

        for request in trades:
            try:
                if request.side == BUY:
                    record = self.buy(request.chain_id, request.user_id, request.amount)
                else:
                    record = self.sell(request.chain_id, request.user_id, request.amount)
            except (LaunchpadError, ValueError) as e:
                logger.warning(
                    f"Skipping {request.side} on chain {request.chain_id} "
                    f"for user {request.user_id}: {e}"
                )
                failures.append((request, e))
                continue
            applied.append(record)

        if failures:
            logger.info(f"Batch applied {len(applied)} trades, skipped {len(failures)}")
        return applied, failures

    # ==========================================================================
    # QUERIES
    # ==========================================================================

    def get_position(self, chain_id: str, user_id: str) -> Optional[UserPosition]:
        entry = self._get_entry(chain_id)
        with entry.lock:
            position = entry.positions.get(user_id)
            return position.copy() if position else None

    def get_trades(self, chain_id: str, user_id: Optional[str] = None) -> list:
        entry = self._get_entry(chain_id)
        with entry.lock:
            return [t for t in entry.trades if user_id is None or t.user_id == user_id]

    def get_price_history(self, chain_id: str, since: Optional[int] = None) -> list:
        """[(timestamp, spot price)] observations, oldest first."""
        entry = self._get_entry(chain_id)
        with entry.lock:
            return [obs for obs in entry.price_history if since is None or obs[0] >= since]

    # ==========================================================================
    # INTERNALS
    # ==========================================================================

    def _get_entry(self, chain_id: str) -> _PoolEntry:
        with self._pools_lock:
            entry = self._pools.get(chain_id)
        if entry is None:
            raise PoolNotFoundError(f"Virtual pool not found for chain {chain_id}")
        return entry

    def _commit(self, entry: _PoolEntry, result: TradeResult, position: UserPosition, record: TradeRecord):
        """Swap in the new state. Caller holds entry.lock."""
        entry.pool = VirtualPool.from_trade(result)
        entry.positions[record.user_id] = position
        entry.trades.append(record)
        entry.total_volume += record.cnpy_amount
        entry.total_transactions += 1
        entry.last_trade_price = result.price

        entry.price_history.append((record.timestamp, entry.pool.current_price))
        cutoff = record.timestamp - self.config.price_history_window
        entry.price_history = [obs for obs in entry.price_history if obs[0] > cutoff]

    def _reject(self, side: str, chain_id: str, user_id: str, error: Exception):
        logger.warning(f"Rejected {side} on chain {chain_id} for user {user_id}: {error}")
        if self.monitor:
            self.monitor.record_rejection(side)

    def _record_metrics(self, record: TradeRecord, spot_price: Decimal, started: float):
        if not self.monitor:
            return
        self.monitor.record_trade(record.trade_type, record.cnpy_amount, time.perf_counter() - started)
        self.monitor.update_pool(record.chain_id, spot_price, record.cnpy_reserve_after)
