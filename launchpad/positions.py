"""
Per-user position in a virtual pool.
Tracks token balance, CNPY flows and profit and loss.
"""
from decimal import Decimal, localcontext

from launchpad.amm_state import CURVE_CONTEXT, ZERO


class UserPosition:
    """
    A user's holdings in one pool.

    Cost basis is the average entry price over all buys; sells realize
    PnL against it.
    """

    def __init__(self, user_id: str, chain_id: str, data: dict = None):
        """
        Initialize position.

        Args:
            user_id: Trader identifier
            chain_id: Pool (chain) identifier
            data: Dict with stored position fields
        """
        if data is None:
            data = {
                'token_balance': '0',
                'total_cnpy_invested': '0',
                'total_cnpy_withdrawn': '0',
                'average_entry_price': '0',
                'unrealized_pnl': '0',
                'realized_pnl': '0',
                'total_return_percent': '0',
                'is_active': True,
            }

        self.user_id = user_id
        self.chain_id = chain_id
        self.token_balance = Decimal(data['token_balance'])
        self.total_cnpy_invested = Decimal(data['total_cnpy_invested'])
        self.total_cnpy_withdrawn = Decimal(data['total_cnpy_withdrawn'])
        self.average_entry_price = Decimal(data['average_entry_price'])
        self.unrealized_pnl = Decimal(data.get('unrealized_pnl', '0'))
        self.realized_pnl = Decimal(data.get('realized_pnl', '0'))
        self.total_return_percent = Decimal(data.get('total_return_percent', '0'))
        self.is_active = bool(data.get('is_active', True))
        self.first_purchase_at = data.get('first_purchase_at')
        self.last_activity_at = data.get('last_activity_at')
        self._validate()

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'token_balance': str(self.token_balance),
            'total_cnpy_invested': str(self.total_cnpy_invested),
            'total_cnpy_withdrawn': str(self.total_cnpy_withdrawn),
            'average_entry_price': str(self.average_entry_price),
            'unrealized_pnl': str(self.unrealized_pnl),
            'realized_pnl': str(self.realized_pnl),
            'total_return_percent': str(self.total_return_percent),
            'is_active': self.is_active,
            'first_purchase_at': self.first_purchase_at,
            'last_activity_at': self.last_activity_at,
        }

    def copy(self) -> 'UserPosition':
        return UserPosition(self.user_id, self.chain_id, self.to_dict())

    def record_buy(self, cnpy_spent: Decimal, tokens_received: Decimal, price: Decimal, timestamp: int):
        """
        Add a purchase and re-average the entry price.

        Args:
            cnpy_spent: CNPY paid into the pool
            tokens_received: Tokens minted to the user (after fee)
            price: Effective price of the trade
            timestamp: Unix time of the trade
        """
        with localcontext(CURVE_CONTEXT):
            self.token_balance += tokens_received
            self.total_cnpy_invested += cnpy_spent
            self.average_entry_price = self.total_cnpy_invested / self.token_balance

            self.unrealized_pnl = (price - self.average_entry_price) * self.token_balance
            if self.total_cnpy_invested > 0:
                self.total_return_percent = self.unrealized_pnl / self.total_cnpy_invested * 100

        self.is_active = True
        if self.first_purchase_at is None:
            self.first_purchase_at = timestamp
        self.last_activity_at = timestamp

    def record_sell(self, tokens_sold: Decimal, cnpy_received: Decimal, price: Decimal, timestamp: int) -> Decimal:
        """
        Remove sold tokens and realize PnL against the average entry price.

        Returns:
            PnL realized by this sale
        """
        with localcontext(CURVE_CONTEXT):
            cost_basis = self.average_entry_price * tokens_sold
            realized = cnpy_received - cost_basis

            self.token_balance -= tokens_sold
            self.total_cnpy_withdrawn += cnpy_received
            self.realized_pnl += realized

            if self.token_balance > 0:
                self.unrealized_pnl = (price - self.average_entry_price) * self.token_balance
            else:
                self.unrealized_pnl = ZERO
                self.is_active = False

            total_value = self.total_cnpy_withdrawn + price * self.token_balance
            if self.total_cnpy_invested > 0:
                self.total_return_percent = (
                    (total_value - self.total_cnpy_invested) / self.total_cnpy_invested * 100
                )

        self.last_activity_at = timestamp
        self._validate()
        return realized

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"UserPosition("
            f"user={self.user_id}, "
            f"chain={self.chain_id}, "
            f"balance={self.token_balance}, "
            f"avg_entry={self.average_entry_price}, "
            f"realized_pnl={self.realized_pnl})"
        )

    def _validate(self):
        """Ensure position consistency."""
        if self.token_balance < 0:
            raise ValueError("Token balance cannot be negative")

        if self.total_cnpy_invested < 0 or self.total_cnpy_withdrawn < 0:
            raise ValueError("CNPY flows cannot be negative")
