"""
IAP Repository - Narrow durable-store capability used by the entitlement services.

Services depend on the IAPRepository protocol only, so an in-memory fake can
stand in for PostgreSQL in tests. The SQLAlchemy implementation translates
store failures into PersistenceError, except unique violations on transaction
insert, which are reported as ``None`` (the idempotency signal).
"""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import (
    CoinBalance,
    CoinLedgerEntry,
    CoinPack,
    IAPProductMap,
    IAPTransaction,
    Profile,
    Subscription,
    utc_now,
)
from app.exceptions import PersistenceError
from app.models.api import ProductKind, SubscriptionStatus, TransactionStatus
from app.models.domain import (
    CoinPackData,
    LedgerEntryIntent,
    NewTransaction,
    ProductMapping,
    SubscriptionData,
    SubscriptionWrite,
    TransactionData,
)

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"


class IAPRepository(Protocol):
    """
    Durable record store protocol.

    Any backing store must implement this interface. Writes happen inside the
    caller's unit of work; ``savepoint()`` isolates writes whose failure must
    not poison it.
    """

    def savepoint(self) -> AbstractAsyncContextManager[Any]: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    async def get_active_product_mapping(
        self, platform: str, provider: str, store_product_id: str
    ) -> ProductMapping | None: ...

    async def find_transaction(self, provider: str, transaction_id: str) -> TransactionData | None: ...

    async def insert_transaction(self, transaction: NewTransaction) -> TransactionData | None:
        """Insert a ledger transaction; ``None`` when (provider, transaction_id) already exists."""
        ...

    async def get_latest_subscription_transaction(self, user_id: str) -> TransactionData | None: ...

    async def get_current_subscription(
        self, user_id: str, include_permanent: bool = False
    ) -> SubscriptionData | None: ...

    async def has_permanent_subscription(self, user_id: str) -> bool: ...

    async def insert_subscription(self, user_id: str, values: SubscriptionWrite) -> SubscriptionData: ...

    async def update_subscription(
        self, subscription_id: int, values: SubscriptionWrite
    ) -> SubscriptionData: ...

    async def get_coin_pack(self, pack_id: str) -> CoinPackData | None: ...

    async def get_coin_balance(self, user_id: str) -> int | None: ...

    async def add_coins(self, user_id: str, delta: int) -> int:
        """Create-or-increment the user's balance; returns the balance after the delta."""
        ...

    async def insert_ledger_entry(self, entry: LedgerEntryIntent) -> None: ...

    async def get_profile_plan(self, user_id: str) -> str | None: ...

    async def set_profile_plan(self, user_id: str, plan: str) -> None: ...

    async def list_users_due_for_sync(self, ending_after: datetime, limit: int) -> list[str]: ...


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return str(code) == UNIQUE_VIOLATION


def _transaction_data(row: IAPTransaction) -> TransactionData:
    return TransactionData(
        id=row.id,
        user_id=row.user_id,
        platform=row.platform,
        provider=row.provider,
        transaction_id=row.transaction_id,
        original_transaction_id=row.original_transaction_id,
        product_id=row.product_id,
        product_type=row.product_type,
        status=row.status,
        purchased_at=row.purchased_at,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _subscription_data(row: Subscription) -> SubscriptionData:
    return SubscriptionData(
        id=row.id,
        user_id=row.profile_id,
        plan_key=row.plan_name,
        status=SubscriptionStatus(row.status),
        start_date=row.start_date,
        end_date=row.end_date,
        auto_renew=row.auto_renew,
        is_permanent=row.is_permanent,
        canceled_at=row.canceled_at,
    )


@asynccontextmanager
async def _db_operation(operation: str) -> AsyncIterator[None]:
    """Translate SQLAlchemy failures into PersistenceError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("database_operation_failed", operation=operation, error=str(exc))
        raise PersistenceError(operation, details=str(exc)) from exc


class SqlAlchemyIAPRepository:
    """IAPRepository backed by an async SQLAlchemy session (PostgreSQL)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def savepoint(self) -> AbstractAsyncContextManager[Any]:
        return self.session.begin_nested()

    async def commit(self) -> None:
        async with _db_operation("commit"):
            await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def get_active_product_mapping(
        self, platform: str, provider: str, store_product_id: str
    ) -> ProductMapping | None:
        stmt = select(IAPProductMap).where(
            IAPProductMap.platform == platform,
            IAPProductMap.provider == provider,
            IAPProductMap.store_product_id == store_product_id,
            IAPProductMap.is_active.is_(True),
        )
        async with _db_operation("iap_product_map read"):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return ProductMapping(
            platform=row.platform,
            provider=row.provider,
            store_product_id=row.store_product_id,
            kind=row.kind,
            plan_key=row.plan_key,
            pack_id=row.pack_id,
        )

    async def find_transaction(self, provider: str, transaction_id: str) -> TransactionData | None:
        stmt = select(IAPTransaction).where(
            IAPTransaction.provider == provider,
            IAPTransaction.transaction_id == transaction_id,
        )
        async with _db_operation("iap_transactions check"):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        return _transaction_data(row) if row is not None else None

    async def insert_transaction(self, transaction: NewTransaction) -> TransactionData | None:
        row = IAPTransaction(
            user_id=transaction.user_id,
            platform=transaction.platform,
            provider=transaction.provider,
            transaction_id=transaction.transaction_id,
            original_transaction_id=transaction.original_transaction_id,
            product_id=transaction.product_id,
            product_type=transaction.product_type,
            status=TransactionStatus.PAID.value,
            purchased_at=transaction.purchased_at,
            expires_at=transaction.expires_at,
            raw=transaction.raw,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(row)
                await self.session.flush()
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                logger.info(
                    "iap_transaction_insert_conflict",
                    provider=transaction.provider,
                    transaction_id=transaction.transaction_id,
                )
                return None
            raise PersistenceError("iap_transactions insert", details=str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError("iap_transactions insert", details=str(exc)) from exc
        return _transaction_data(row)

    async def get_latest_subscription_transaction(self, user_id: str) -> TransactionData | None:
        stmt = (
            select(IAPTransaction)
            .where(
                IAPTransaction.user_id == user_id,
                IAPTransaction.product_type == ProductKind.SUBSCRIPTION.value,
            )
            .order_by(
                IAPTransaction.purchased_at.desc().nulls_last(),
                IAPTransaction.created_at.desc(),
            )
            .limit(1)
        )
        async with _db_operation("iap_transactions latest subscription"):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        return _transaction_data(row) if row is not None else None

    async def get_current_subscription(
        self, user_id: str, include_permanent: bool = False
    ) -> SubscriptionData | None:
        stmt = select(Subscription).where(Subscription.profile_id == user_id)
        if not include_permanent:
            stmt = stmt.where(Subscription.is_permanent.is_(False))
        stmt = stmt.order_by(Subscription.end_date.desc().nulls_last(), Subscription.id.desc()).limit(1)
        async with _db_operation("abonnements read"):
            result = await self.session.execute(stmt)
            row = result.scalar_one_or_none()
        return _subscription_data(row) if row is not None else None

    async def has_permanent_subscription(self, user_id: str) -> bool:
        stmt = (
            select(Subscription.id)
            .where(Subscription.profile_id == user_id, Subscription.is_permanent.is_(True))
            .limit(1)
        )
        async with _db_operation("abonnements permanent check"):
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def insert_subscription(self, user_id: str, values: SubscriptionWrite) -> SubscriptionData:
        row = Subscription(
            profile_id=user_id,
            plan_name=values.plan_key,
            status=values.status.value,
            start_date=values.start_date,
            end_date=values.end_date,
            auto_renew=values.auto_renew,
            is_permanent=False,
            canceled_at=values.canceled_at,
        )
        async with _db_operation("abonnements insert"):
            self.session.add(row)
            await self.session.flush()
        return _subscription_data(row)

    async def update_subscription(
        self, subscription_id: int, values: SubscriptionWrite
    ) -> SubscriptionData:
        async with _db_operation("abonnements update"):
            row = await self.session.get(Subscription, subscription_id)
            if row is None:
                raise PersistenceError(
                    "abonnements update", details={"subscription_id": subscription_id}
                )
            row.plan_name = values.plan_key
            row.status = values.status.value
            row.start_date = values.start_date
            row.end_date = values.end_date
            row.auto_renew = values.auto_renew
            row.canceled_at = values.canceled_at
            await self.session.flush()
        return _subscription_data(row)

    async def get_coin_pack(self, pack_id: str) -> CoinPackData | None:
        async with _db_operation("okcoins_packs read"):
            row = await self.session.get(CoinPack, pack_id)
        return CoinPackData(pack_id=row.id, coins=row.coins) if row is not None else None

    async def get_coin_balance(self, user_id: str) -> int | None:
        stmt = select(CoinBalance.coins_balance).where(CoinBalance.user_id == user_id)
        async with _db_operation("okcoins_users_balance read"):
            result = await self.session.execute(stmt)
            balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else None

    async def add_coins(self, user_id: str, delta: int) -> int:
        stmt = (
            pg_insert(CoinBalance)
            .values(user_id=user_id, coins_balance=delta, updated_at=utc_now())
            .on_conflict_do_update(
                index_elements=[CoinBalance.user_id],
                set_={
                    "coins_balance": CoinBalance.coins_balance + delta,
                    "updated_at": utc_now(),
                },
            )
            .returning(CoinBalance.coins_balance)
        )
        async with _db_operation("okcoins_users_balance upsert"):
            result = await self.session.execute(stmt)
            return int(result.scalar_one())

    async def insert_ledger_entry(self, entry: LedgerEntryIntent) -> None:
        row = CoinLedgerEntry(
            user_id=entry.user_id,
            delta=entry.delta,
            kind=entry.kind,
            ref_type=entry.ref_type,
            ref_id=entry.ref_id,
            balance_after=entry.balance_after,
            entry_metadata=entry.metadata,
        )
        async with _db_operation("okcoins_ledger insert"):
            async with self.session.begin_nested():
                self.session.add(row)
                await self.session.flush()

    async def get_profile_plan(self, user_id: str) -> str | None:
        stmt = select(Profile.plan).where(Profile.id == user_id)
        async with _db_operation("profiles read"):
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

    async def set_profile_plan(self, user_id: str, plan: str) -> None:
        stmt = update(Profile).where(Profile.id == user_id).values(plan=plan, updated_at=utc_now())
        async with _db_operation("profiles plan update"):
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
        if result.rowcount == 0:
            logger.warning("profile_not_found_for_plan_update", user_id=user_id, plan=plan)

    async def list_users_due_for_sync(self, ending_after: datetime, limit: int) -> list[str]:
        stmt = (
            select(Subscription.profile_id)
            .where(
                Subscription.is_permanent.is_(False),
                Subscription.canceled_at.is_(None),
                Subscription.end_date >= ending_after,
            )
            .distinct()
            .order_by(Subscription.profile_id)
            .limit(limit)
        )
        async with _db_operation("abonnements sync candidates"):
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
