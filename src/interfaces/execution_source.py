from abc import ABC, abstractmethod
from typing import List, Optional

from src.exchanges.models import AccountSummary, UnifiedExecution, UnifiedOrder, WalletTransaction


class IExecutionSource(ABC):
    """
    Interface for fetching already-normalized exchange history for an account.

    Implementations own transport, signing, pagination and rate limiting.
    The reconstruction engine never talks to a source directly.
    """

    @abstractmethod
    def fetch_executions(self, account) -> List[UnifiedExecution]:
        """Fetch every execution available for the account."""
        pass

    def fetch_wallet_transactions(self, account) -> List[WalletTransaction]:
        """Fetch wallet history; sources without one return nothing."""
        return []

    def fetch_orders(self, account) -> List[UnifiedOrder]:
        """Fetch order history; sources without one return nothing."""
        return []

    def fetch_account_summary(self, account) -> Optional[AccountSummary]:
        """Current balances and open positions, or None when unavailable."""
        return None
