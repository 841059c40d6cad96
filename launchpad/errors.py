"""
Error kinds raised by the bonding curve engine and the pool ledger.
"""


class LaunchpadError(Exception):
    """Base class for launchpad errors."""
    pass


class BondingCurveError(LaunchpadError):
    """Raised when the bonding curve cannot price a trade."""
    default_message = "bonding curve error"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)


class PoolNotInitializedError(BondingCurveError):
    """Pool fields are missing or total supply is negative."""
    default_message = "virtual pool not properly initialized"


class InsufficientReserveError(BondingCurveError):
    """The pool reserves cannot satisfy the trade."""
    default_message = "insufficient reserve for trade"


class ZeroAmountError(BondingCurveError):
    """Trade amount is absent, zero, negative or not a finite number."""
    default_message = "trade amount must be greater than zero"


class InsufficientTokensError(BondingCurveError):
    """Sell amount exceeds the circulating supply."""
    default_message = "insufficient tokens for sell"


class LedgerError(LaunchpadError):
    """Raised by the pool ledger."""
    pass


class PoolNotFoundError(LedgerError):
    pass


class PoolExistsError(LedgerError):
    pass


class InsufficientBalanceError(LedgerError):
    """Seller's position holds fewer tokens than the sell amount."""
    pass
