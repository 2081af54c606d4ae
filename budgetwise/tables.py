from __future__ import annotations

from decimal import Decimal

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

metadata = MetaData()


class Money(TypeDecorator):
    """Exact decimal column.

    SQLite has no decimal storage and its Numeric binding goes through float, so
    there the value is kept as decimal text. Other backends get a native NUMERIC.
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int, scale: int) -> None:
        super().__init__(precision=precision, scale=scale, asdecimal=True)
        self.precision = precision
        self.scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(self.precision, self.scale, asdecimal=True))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, Decimal):
            return value
        return Decimal(str(value))


users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("external_id", String(255), unique=True, nullable=False),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("type", String(20), nullable=False),
    Column("category", String(255), nullable=False),
    Column("amount", Money(32, 14), nullable=False),
    Column("original_amount", Money(24, 6), nullable=False),
    Column("original_currency", String(3), nullable=False),
    Column("conversion_rate", Money(18, 8)),
    Column("date", Date, nullable=False),
    Column("description", String(500)),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category", String(255), nullable=False),
    Column("limit_amount", Money(18, 2)),
    Column("month", Integer, nullable=False),
    Column("year", Integer, nullable=False),
    UniqueConstraint("user_id", "category", "month", "year", name="uq_budgets_user_category_period"),
)

savings = Table(
    "savings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("target_amount", Money(18, 2)),
    Column("month", Integer, nullable=False),
    Column("year", Integer, nullable=False),
    UniqueConstraint("user_id", "month", "year", name="uq_savings_user_period"),
)


def create_ledger_engine(database_url: str) -> Engine:
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **engine_kwargs)
