"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class IAPProductMap(Base):
    """
    ORM model for iap_product_map table.

    Reference data mapping store product identifiers to business effects.
    Never written by the service.
    """

    __tablename__ = "iap_product_map"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    store_product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    plan_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    pack_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index(
            "uq_iap_product_map_active",
            "platform",
            "provider",
            "store_product_id",
            unique=True,
            postgresql_where=(is_active.is_(True)),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<IAPProductMap(platform={self.platform}, provider={self.provider}, "
            f"store_product_id={self.store_product_id}, kind={self.kind})>"
        )


class IAPTransaction(Base):
    """
    ORM model for iap_transactions table.

    One row per real-world purchase event. The (provider, transaction_id)
    unique constraint is the only double-credit guard.
    """

    __tablename__ = "iap_transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    original_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="paid")
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("provider", "transaction_id", name="uq_iap_transactions_provider_tx"),
        Index("idx_iap_transactions_user_type", "user_id", "product_type"),
        Index("idx_iap_transactions_original_tx", "original_transaction_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<IAPTransaction(id={self.id}, provider={self.provider}, "
            f"transaction_id={self.transaction_id}, product_type={self.product_type})>"
        )


class Subscription(Base):
    """
    ORM model for abonnements table.

    The row with the latest end_date is the user's authoritative subscription.
    Permanent rows are lifetime grants and are never touched by automation.
    """

    __tablename__ = "abonnements"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_permanent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'expired')", name="ck_abonnements_status"),
        Index("idx_abonnements_profile_end", "profile_id", "end_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, profile_id={self.profile_id}, "
            f"plan_name={self.plan_name}, status={self.status}, end_date={self.end_date})>"
        )


class CoinPack(Base):
    """ORM model for okcoins_packs table (reference data)."""

    __tablename__ = "okcoins_packs"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    coins: Mapped[int | None] = mapped_column(Integer, nullable=True)


class CoinBalance(Base):
    """ORM model for okcoins_users_balance table."""

    __tablename__ = "okcoins_users_balance"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    coins_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class CoinLedgerEntry(Base):
    """
    ORM model for okcoins_ledger table.

    Append-only audit trail of coin balance deltas.
    """

    __tablename__ = "okcoins_ledger"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    ref_type: Mapped[str] = mapped_column(String(50), nullable=False)
    ref_id: Mapped[str] = mapped_column(String(255), nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # "metadata" is reserved on declarative classes
    entry_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("ref_type", "ref_id", name="uq_okcoins_ledger_ref"),
        Index("idx_okcoins_ledger_user", "user_id"),
    )


class Profile(Base):
    """ORM model for profiles table. Only the denormalized plan is written here."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    plan: Mapped[str | None] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=utc_now, onupdate=utc_now
    )
