"""
Account ledger.

Every invoice is backed by a dedicated account in the buyer's currency.
Accounts are reused: once an invoice is paid it releases its account, and
the next invoice in that currency picks it up. Pooled accounts are the
per-currency system accounts shared by all sellers.
"""

import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.engine.errors import InvalidError
from settlement_engine.models.tables import Account, Invoice
from settlement_engine.repos import AccountRepo, InvoiceRepo

logger = logging.getLogger("settlement_engine.accounts")

CURRENCY_RE = re.compile(r"^[A-Z0-9]{3,10}$")


def validate_currency(currency: str) -> str:
    if not currency or not CURRENCY_RE.match(currency):
        raise InvalidError(f"Unknown currency code: {currency!r}")
    return currency


async def acquire_account(session: AsyncSession, currency: str) -> Account:
    """Reuse a free dedicated account of this currency, or open a new one."""
    validate_currency(currency)
    accounts = AccountRepo(session)
    account = await accounts.find_free_dedicated(currency)
    if account is not None:
        logger.debug("Reusing account %s (%s)", account.id, currency)
        return account
    account = await accounts.create(currency, is_pooled=False)
    logger.info("Opened dedicated account %s (%s)", account.id, currency)
    return account


async def get_pooled_account(session: AsyncSession, currency: str) -> Account:
    validate_currency(currency)
    accounts = AccountRepo(session)
    account = await accounts.get_pooled(currency)
    if account is None:
        account = await accounts.create(currency, is_pooled=True)
        logger.info("Opened pooled account %s (%s)", account.id, currency)
    return account


async def release_account(session: AsyncSession, invoice: Invoice) -> str | None:
    """Unlink a paid invoice's dedicated account so it can back another invoice."""
    account_id = await InvoiceRepo(session).unlink_account(invoice)
    if account_id:
        logger.info("Released account %s from invoice %s", account_id, invoice.id)
    return account_id
