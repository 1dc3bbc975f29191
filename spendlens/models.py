"""
SQLAlchemy models backing the transaction store.
Ids are strings so records round-trip unchanged through the schemas.
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Boolean,
    Date,
    DateTime,
    Numeric,
    Text,
    Integer,
    ForeignKey,
    Index,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.orm import relationship

from spendlens.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class Category(Base):
    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    parent_id = Column(String(36), ForeignKey("categories.id"), nullable=True)
    category_type = Column(String(20), nullable=True)  # expense, income, transfer
    is_transfer = Column(Boolean, default=False, nullable=False)  # Assigning it marks the transaction as a transfer
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    parent = relationship("Category", remote_side=[id], backref="children")
    transactions = relationship("Transaction", back_populates="category")

    __table_args__ = (
        UniqueConstraint("name", "parent_id", name="categories_name_parent"),
    )


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String(36), primary_key=True, default=_uuid)
    canonical_name = Column(String(255), nullable=False, unique=True)
    patterns = Column(JSON, default=list)  # Substrings that identify this merchant
    created_at = Column(DateTime, default=datetime.utcnow)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False, unique=True)


class TransactionTag(Base):
    __tablename__ = "transaction_tags"

    transaction_id = Column(String(36), ForeignKey("transactions.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    tx_date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    description = Column(Text, default="")
    merchant_raw = Column(String(255), nullable=True)
    flow_type = Column(String(20), default="unknown", nullable=False)  # income, expense, transfer, unknown
    status = Column(String(20), default="booked", nullable=False)  # booked, pending
    is_excluded = Column(Boolean, default=False, nullable=False)  # Left out of analytics
    is_transfer = Column(Boolean, default=False, nullable=False)
    category_id = Column(String(36), ForeignKey("categories.id"), nullable=True, index=True)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=True, index=True)
    section_label = Column(String(255), nullable=True)  # Section hint from the source export
    notes = Column(Text, nullable=True)
    is_recurring = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    category = relationship("Category", back_populates="transactions")
    merchant = relationship("Merchant")
    tag_links = relationship("TransactionTag", cascade="all, delete-orphan")
    splits = relationship("TransactionSplit", back_populates="transaction", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_transactions_date_amount", "tx_date", "amount"),
    )


class TransactionSplit(Base):
    __tablename__ = "transaction_splits"

    id = Column(String(36), primary_key=True, default=_uuid)
    transaction_id = Column(String(36), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(String(36), ForeignKey("categories.id"), nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)
    description = Column(Text, nullable=True)

    transaction = relationship("Transaction", back_populates="splits")


class CategorizationRule(Base):
    __tablename__ = "rules"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, default="")
    priority = Column(Integer, nullable=False, default=100)  # Lower runs first
    enabled = Column(Boolean, nullable=False, default=True)
    match_field = Column(String(20), nullable=False, default="combined")
    match_type = Column(String(20), nullable=False, default="contains")
    match_value = Column(Text, nullable=False)
    match_value_secondary = Column(Text, nullable=True)
    action_type = Column(String(30), nullable=False)
    action_value = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_rules_priority", "priority", "name"),
    )
