"""
Wallet ledger — running balance over wallet history.

A pure fold: returns new records annotated with the balance after each
transaction and leaves the input untouched, so independent accounts can
be recomputed in parallel.
"""

from typing import Iterable, List

from src.exchanges.models import BalancedTransaction, WalletTransaction


def annotate_running_balance(
    transactions: Iterable[WalletTransaction],
    opening_balance: int = 0,
) -> List[BalancedTransaction]:
    """Order by timestamp and attach the fixed-point balance after each entry."""
    ordered = sorted(transactions, key=lambda t: (t.timestamp, t.transact_id))

    balanced = []
    balance = opening_balance
    for tx in ordered:
        balance += tx.amount - tx.fee
        balanced.append(BalancedTransaction(transaction=tx, wallet_balance=balance))
    return balanced
