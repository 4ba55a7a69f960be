"""SQLAlchemy models for the tokenized property investment ledger.

Only the columns the certificate workflow reads (plus the two
``certificate_path`` write-back fields) are mapped here; the wider schema is
owned by the platform's main service.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from core.database import Base

# Monetary columns: 18 digits before the point, 6 after (USDT precision)
Money = Numeric(24, 6, asdecimal=True)
TokenAmount = Numeric(24, 6, asdecimal=True)


def utcnow() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def new_uuid() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime(timezone=True), default=utcnow)

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class TransactionType(str, PyEnum):
    INVESTMENT = "investment"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REWARD = "reward"


class TransactionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class InvestmentStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


def _str_enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda x: [e.value for e in x],
    )


class User(TimestampMixin, Base):
    """Investor account."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    display_code: Mapped[str | None] = mapped_column(
        String(32), nullable=True, unique=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    investments: Mapped[list["Investment"]] = relationship(back_populates="user")
    transactions: Mapped[list["Transaction"]] = relationship(back_populates="user")


class Property(TimestampMixin, Base):
    """A tokenized real-estate asset."""

    __tablename__ = "properties"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    display_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    country: Mapped[str | None] = mapped_column(String(120), nullable=True)
    total_tokens: Mapped[Decimal] = mapped_column(
        TokenAmount, nullable=False, default=Decimal("0")
    )
    price_per_token_usdt: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    expected_roi: Mapped[Decimal | None] = mapped_column(
        Numeric(7, 2, asdecimal=True), nullable=True
    )
    legal_doc_path: Mapped[str | None] = mapped_column(Text, nullable=True)


class Investment(TimestampMixin, Base):
    """A user's token position in a property, created per purchase."""

    __tablename__ = "investments"
    __table_args__ = (
        Index("ix_investments_user_property", "user_id", "property_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    display_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    property_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("properties.id", ondelete="CASCADE"), nullable=False
    )
    tokens_purchased: Mapped[Decimal] = mapped_column(TokenAmount, nullable=False)
    amount_usdt: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[InvestmentStatus] = mapped_column(
        _str_enum(InvestmentStatus, "investment_status"),
        nullable=False,
        default=InvestmentStatus.PENDING,
    )
    certificate_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    user: Mapped["User"] = relationship(back_populates="investments")
    property: Mapped["Property"] = relationship()


class Transaction(TimestampMixin, Base):
    """A ledger entry; investment-type transactions get a certificate."""

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_property", "user_id", "property_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    display_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    property_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("properties.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[TransactionType] = mapped_column(
        _str_enum(TransactionType, "transaction_type"), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        _str_enum(TransactionStatus, "transaction_status"), nullable=False
    )
    amount_usdt: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON, nullable=True
    )
    certificate_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    user: Mapped[Optional["User"]] = relationship(back_populates="transactions")
    property: Mapped[Optional["Property"]] = relationship()
