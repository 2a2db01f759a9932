"""
Exact conversion of order amounts with locked exchange rates.

Rates convert seller-currency minimal units into buyer-currency minimal
units. What the buyer owes for an order is rounded up, cashback is rounded
down, so rounding never works against the platform. All arithmetic is on
Decimal with enough precision for 18-decimal tokens; no floats.
"""

from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal, localcontext
from typing import Optional

from settlement_engine.models.enums import ExchangeRateStatus
from settlement_engine.models.tables import Order, OrderExchangeRate

PRECISION = 120
USABLE_RATE_STATUSES = {ExchangeRateStatus.LOCKED.value, ExchangeRateStatus.APPLIED.value}


def _convert(amount: int, rate: Decimal, rounding: str) -> int:
    with localcontext() as ctx:
        ctx.prec = PRECISION
        return int((Decimal(amount) * Decimal(rate)).to_integral_value(rounding=rounding))


def convert_up(amount: int, rate: Decimal) -> int:
    return _convert(amount, rate, ROUND_CEILING)


def convert_down(amount: int, rate: Decimal) -> int:
    return _convert(amount, rate, ROUND_FLOOR)


def locked_rate(rate_row: Optional[OrderExchangeRate]) -> Optional[Decimal]:
    """The frozen rate, or None while the lock is pending or expired."""
    if rate_row is None or rate_row.status not in USABLE_RATE_STATUSES or rate_row.rate is None:
        return None
    return rate_row.rate


@dataclass
class OrderPrice:
    order_id: str
    seller_id: str
    seller_currency: str
    seller_total: int
    seller_cashback: int
    rate: Optional[Decimal]
    buyer_total: Optional[int]
    buyer_cashback: Optional[int]


@dataclass
class InvoicePrice:
    buyer_currency: str
    orders: list[OrderPrice] = field(default_factory=list)

    @property
    def has_missing_rates(self) -> bool:
        return any(op.rate is None for op in self.orders)

    @property
    def total_price(self) -> Optional[int]:
        """Amount required to fully capture the invoice, None until every rate is locked."""
        if self.has_missing_rates or not self.orders:
            return None
        return sum(op.buyer_total for op in self.orders)

    @property
    def total_cashback(self) -> Optional[int]:
        if self.has_missing_rates or not self.orders:
            return None
        return sum(op.buyer_cashback for op in self.orders)


def price_order(order: Order, rate_row: Optional[OrderExchangeRate]) -> OrderPrice:
    rate = locked_rate(rate_row)
    return OrderPrice(
        order_id=order.id,
        seller_id=order.seller_id,
        seller_currency=order.seller_currency,
        seller_total=order.total_amount,
        seller_cashback=order.cashback_amount,
        rate=rate,
        buyer_total=convert_up(order.total_amount, rate) if rate is not None else None,
        buyer_cashback=convert_down(order.cashback_amount, rate) if rate is not None else None,
    )


def price_invoice(
    buyer_currency: str,
    orders: list[Order],
    rates: dict[str, OrderExchangeRate],
) -> InvoicePrice:
    return InvoicePrice(
        buyer_currency=buyer_currency,
        orders=[price_order(order, rates.get(order.id)) for order in orders],
    )


def fee_for(amount: int, fee_bps: int) -> int:
    """Platform fee in basis points of an order amount, rounded up."""
    return -(-amount * fee_bps // 10_000)
