"""SQLAlchemy table declarations for the budget database.

``exchange_rates`` is owned by the rate cache. The remaining tables are the
slice of the budget schema the schedule engine reads and writes.
"""

from __future__ import annotations

from sqlalchemy import Column, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class ExchangeRateRow(Base):
    __tablename__ = "exchange_rates"
    __table_args__ = (
        UniqueConstraint("from_currency", "to_currency", "date"),
        Index("idx_exchange_rates_lookup", "from_currency", "to_currency", "date"),
        Index("idx_exchange_rates_timestamp", "timestamp"),
    )

    id = Column(String, primary_key=True)
    from_currency = Column(String, nullable=False)
    to_currency = Column(String, nullable=False)
    rate = Column(Float, nullable=False)
    date = Column(String(10), nullable=False)
    timestamp = Column(String, nullable=False)
    source = Column(String, nullable=False)


class PreferenceRow(Base):
    __tablename__ = "preferences"

    id = Column(String, primary_key=True)
    value = Column(Text)


class AccountRow(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    currency_code = Column(String(8))
    offbudget = Column(Integer, nullable=False, default=0)
    closed = Column(Integer, nullable=False, default=0)
    tombstone = Column(Integer, nullable=False, default=0)


class PayeeRow(Base):
    __tablename__ = "payees"

    id = Column(String, primary_key=True)
    name = Column(String)
    transfer_acct = Column(String)
    tombstone = Column(Integer, nullable=False, default=0)


class PayeeMappingRow(Base):
    __tablename__ = "payee_mapping"

    id = Column(String, primary_key=True)
    targetId = Column(String)


class CategoryGroupRow(Base):
    __tablename__ = "category_groups"

    id = Column(String, primary_key=True)
    name = Column(String)
    tombstone = Column(Integer, nullable=False, default=0)


class CategoryRow(Base):
    __tablename__ = "categories"

    id = Column(String, primary_key=True)
    name = Column(String)
    cat_group = Column(String)
    tombstone = Column(Integer, nullable=False, default=0)


class CategoryMappingRow(Base):
    __tablename__ = "category_mapping"

    id = Column(String, primary_key=True)
    transferId = Column(String)


class RuleRow(Base):
    __tablename__ = "rules"

    id = Column(String, primary_key=True)
    stage = Column(String)
    conditions_op = Column(String, nullable=False, default="and")
    conditions = Column(Text, nullable=False, default="[]")
    actions = Column(Text, nullable=False, default="[]")
    tombstone = Column(Integer, nullable=False, default=0)


class ScheduleRow(Base):
    __tablename__ = "schedules"

    id = Column(String, primary_key=True)
    name = Column(String)
    rule = Column(String)
    active = Column(Integer, nullable=False, default=0)
    completed = Column(Integer, nullable=False, default=0)
    posts_transaction = Column(Integer, nullable=False, default=0)
    conditions_snapshot = Column(Text)
    actions_snapshot = Column(Text)
    tombstone = Column(Integer, nullable=False, default=0)


class ScheduleNextDateRow(Base):
    __tablename__ = "schedules_next_date"

    id = Column(String, primary_key=True)
    schedule_id = Column(String, nullable=False, index=True)
    local_next_date = Column(String(10))
    local_next_date_ts = Column(Integer)
    base_next_date = Column(String(10))
    base_next_date_ts = Column(Integer)
    tombstone = Column(Integer, nullable=False, default=0)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    account = Column(String, nullable=False)
    payee = Column(String)
    category = Column(String)
    amount = Column(Integer, nullable=False, default=0)
    date = Column(String(10), nullable=False)
    notes = Column(Text)
    schedule = Column(String, index=True)
    cleared = Column(Integer, nullable=False, default=0)
    fx_rate = Column(Float)
    transfer_id = Column(String)
    tombstone = Column(Integer, nullable=False, default=0)


__all__ = [
    "AccountRow",
    "Base",
    "CategoryGroupRow",
    "CategoryMappingRow",
    "CategoryRow",
    "ExchangeRateRow",
    "PayeeMappingRow",
    "PayeeRow",
    "PreferenceRow",
    "RuleRow",
    "ScheduleNextDateRow",
    "ScheduleRow",
    "TransactionRow",
]
