"""
Exact column types for money and rates.

Amounts are integers in the currency's minimal unit and can exceed 64 bits
(1 token with 18 decimals is 10**18), so they are stored as NUMERIC(78, 0)
on PostgreSQL and as decimal text elsewhere. Floats never touch the database.
"""

from decimal import Decimal

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator


class MinorUnits(TypeDecorator):
    """Integer amount in minimal currency units."""

    impl = String(80)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Monetary amounts must be int minimal units, got {value!r}")
        if dialect.name == "postgresql":
            return Decimal(value)
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(Decimal(value))


class DecimalText(TypeDecorator):
    """Exact decimal stored as text (NUMERIC on PostgreSQL)."""

    impl = String(80)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(asdecimal=True))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        if dialect.name == "postgresql":
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)
