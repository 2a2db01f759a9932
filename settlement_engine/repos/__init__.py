"""
Repositories, one per aggregate root.

Engine components never assign aggregate fields directly: every mutation
goes through a named repository method that runs inside the caller's
transaction.
"""

from settlement_engine.repos.accounts import AccountRepo
from settlement_engine.repos.fees import FeeRepo
from settlement_engine.repos.invoices import InvoiceRepo
from settlement_engine.repos.orders import OrderRepo
from settlement_engine.repos.payment_intents import PaymentIntentRepo
from settlement_engine.repos.payouts import PayoutRepo

__all__ = [
    "AccountRepo",
    "FeeRepo",
    "InvoiceRepo",
    "OrderRepo",
    "PaymentIntentRepo",
    "PayoutRepo",
]
