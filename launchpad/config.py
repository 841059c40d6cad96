"""
Configuration management for the launchpad engine and ledger.
"""
import json
import logging
import os
from dataclasses import dataclass, asdict, field
from decimal import Decimal, InvalidOperation, localcontext

from launchpad.amm_state import CURVE_CONTEXT, ZERO, to_decimal

# Basis points divisor (100 bps = 1%)
BASIS_POINTS_DIVISOR = 10000

# Default fee rate (1%)
DEFAULT_FEE_RATE_BASIS_POINTS = 100

# Price used while both reserves are 0 (CNPY per token)
DEFAULT_INITIAL_PRICE = Decimal('0.01')


def parse_decimal(value, name: str) -> Decimal:
    """
    Parse a configured decimal value.

    Raises:
        ValueError: value is absent, not a decimal literal, or not finite
    """
    try:
        parsed = to_decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"{name} must be a decimal, got {value!r}")
    if parsed is None or not parsed.is_finite():
        raise ValueError(f"{name} must be a finite decimal, got {value!r}")
    return parsed


@dataclass(frozen=True)
class BondingCurveConfig:
    """
    Fee rate and bootstrap price of a bonding curve.

    Fees are always taken from the output leg of a trade.
    """
    fee_rate_basis_points: int = DEFAULT_FEE_RATE_BASIS_POINTS
    initial_price: Decimal = DEFAULT_INITIAL_PRICE

    def __post_init__(self):
        fee = self.fee_rate_basis_points
        if isinstance(fee, bool) or not isinstance(fee, int):
            raise ValueError(f"Fee rate must be an integer number of basis points, got {fee!r}")
        if fee < 0 or fee > BASIS_POINTS_DIVISOR:
            raise ValueError(f"Fee rate must be within [0, {BASIS_POINTS_DIVISOR}] bps, got {fee}")

        initial_price = parse_decimal(self.initial_price, "Initial price")
        if initial_price <= 0:
            raise ValueError(f"Initial price must be positive, got {self.initial_price!r}")
        object.__setattr__(self, 'initial_price', initial_price)

    @classmethod
    def default(cls) -> 'BondingCurveConfig':
        """1% fee, 0.01 CNPY initial price."""
        return cls()

    def apply_fee(self, amount: Decimal) -> Decimal:
        """
        Amount left after the fee.

        amount * (BASIS_POINTS_DIVISOR - fee) / BASIS_POINTS_DIVISOR
        """
        if self.fee_rate_basis_points == 0:
            return amount

        with localcontext(CURVE_CONTEXT):
            return amount * (BASIS_POINTS_DIVISOR - self.fee_rate_basis_points) / BASIS_POINTS_DIVISOR

    def calculate_fee(self, amount: Decimal) -> Decimal:
        """Fee charged on amount."""
        if self.fee_rate_basis_points == 0:
            return ZERO

        with localcontext(CURVE_CONTEXT):
            return amount * self.fee_rate_basis_points / BASIS_POINTS_DIVISOR

    def to_dict(self) -> dict:
        return {
            'fee_rate_basis_points': self.fee_rate_basis_points,
            'initial_price': str(self.initial_price),
        }


@dataclass
class LedgerConfig:
    """Pool ledger configuration."""
    graduation_threshold: str = "0"  # CNPY reserve needed to graduate, 0 disables
    price_history_window: int = 86400  # seconds
    max_trade_records: int = 10000  # per pool

    def __post_init__(self):
        if parse_decimal(self.graduation_threshold, "Graduation threshold") < 0:
            raise ValueError("Graduation threshold cannot be negative")
        if self.price_history_window <= 0:
            raise ValueError("Price history window must be positive")
        if self.max_trade_records <= 0:
            raise ValueError("Trade record cap must be positive")


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    host: str = "127.0.0.1"
    port: int = 9090
    enabled: bool = False


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"


@dataclass
class Config:
    """Main configuration."""
    curve: BondingCurveConfig = field(default_factory=BondingCurveConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    logging: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def default(cls) -> 'Config':
        """Create default configuration."""
        return cls(
            curve=BondingCurveConfig.default(),
            ledger=LedgerConfig(),
            monitoring=MonitoringConfig(),
            logging=LogConfig()
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        return cls(
            curve=BondingCurveConfig(**data.get('curve', {})),
            ledger=LedgerConfig(**data.get('ledger', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {})),
            logging=LogConfig(**data.get('logging', {}))
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)

        return cls.from_dict(data)

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'curve': self.curve.to_dict(),
            'ledger': asdict(self.ledger),
            'monitoring': asdict(self.monitoring),
            'logging': asdict(self.logging)
        }


def configure_logging(config: LogConfig):
    """Apply the configured log level to the launchpad loggers."""
    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {config.level}")

    logging.basicConfig(level=level)
    logging.getLogger('launchpad').setLevel(level)
