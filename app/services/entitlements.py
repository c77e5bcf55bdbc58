"""
Entitlement Applier - Turns a recognized purchase into subscription or coin state.

apply() runs both on first recognition of a transaction and on every replay,
so every write it makes is idempotent:

- Subscription end dates only move forward (max of stored and observed expiry)
- Coins are credited only for newly recorded transactions
- Permanent (lifetime) rows are never touched
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime

from structlog import get_logger

from app.db.repository import IAPRepository
from app.exceptions import DataIntegrityError, NotFoundError, PersistenceError
from app.models.api import FREE_PLAN, PERMANENT_PLAN, ProductKind, SubscriptionStatus
from app.models.domain import (
    CoinPackData,
    CoinsEffect,
    Effect,
    LedgerEntryIntent,
    ProductMapping,
    PurchaseRecord,
    SubscriptionData,
    SubscriptionEffect,
    SubscriptionWrite,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

LEDGER_KIND = "iap_purchase"
LEDGER_FALLBACK_KIND = "purchase"
LEDGER_REF_TYPE = "iap_transaction"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _latest(*dates: datetime | None) -> datetime | None:
    present = [d for d in dates if d is not None]
    return max(present) if present else None


def _pack_quantity(pack: CoinPackData | None, pack_id: str) -> int:
    """Validate a pack's coin quantity: a positive, finite, whole number."""
    coins = pack.coins if pack is not None else None
    if (
        coins is None
        or isinstance(coins, bool)
        or not isinstance(coins, (int, float))
        or not math.isfinite(coins)
        or coins <= 0
        or coins != int(coins)
    ):
        raise DataIntegrityError(
            "Invalid coins for pack",
            details={"packId": pack_id, "coins": coins},
        )
    return int(coins)


def ledger_ref_id(purchase: PurchaseRecord) -> str:
    return f"{purchase.provider}:{purchase.provider_tx_id}"


class EntitlementApplier:
    """Applies product effects to subscriptions, balances and profile plans."""

    def __init__(
        self,
        repository: IAPRepository,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.repository = repository
        self._now = now

    async def apply(
        self,
        user_id: str,
        mapping: ProductMapping,
        purchase: PurchaseRecord,
        is_new_transaction: bool,
        auto_renew: bool | None = None,
    ) -> Effect:
        """
        Apply the effect of a purchase for a user.

        Args:
            user_id: Account receiving the entitlement
            mapping: Resolved product mapping
            purchase: Verified purchase facts
            is_new_transaction: True only when this call recorded the transaction
            auto_renew: Store renewal flag (sync only); None means "follow activity"

        Raises:
            DataIntegrityError: Unknown kind or bad reference data
            PersistenceError: If a primary write fails
        """
        if mapping.kind == ProductKind.SUBSCRIPTION.value:
            effect: Effect = await self._apply_subscription(user_id, mapping, purchase, auto_renew)
            metrics.record_entitlement(mapping.kind, is_new_transaction)
            return effect

        if mapping.kind == ProductKind.COINS.value:
            coins_effect = await self._apply_coins(user_id, mapping, purchase, is_new_transaction)
            metrics.record_entitlement(
                mapping.kind, is_new_transaction, coins=coins_effect.coins_added
            )
            return coins_effect

        raise DataIntegrityError(
            "Unknown product kind",
            details={"kind": mapping.kind, "storeProductId": mapping.store_product_id},
        )

    async def _apply_subscription(
        self,
        user_id: str,
        mapping: ProductMapping,
        purchase: PurchaseRecord,
        auto_renew: bool | None,
    ) -> SubscriptionEffect:
        if not mapping.plan_key:
            raise DataIntegrityError(
                "Subscription mapping has no plan_key",
                details={"storeProductId": mapping.store_product_id},
            )

        now = self._now()
        # Re-read right before writing; the max() merge below makes interleaved writers converge
        current = await self.repository.get_current_subscription(user_id)

        if current is not None and not self._may_reactivate(current, purchase):
            logger.info(
                "subscription_cancelled_not_reactivated",
                user_id=user_id,
                subscription_id=current.id,
                transaction_id=purchase.provider_tx_id,
            )
            return SubscriptionEffect(
                plan_key=current.plan_key,
                status=current.status,
                end_date=current.end_date,
                reactivated=False,
            )

        existing_start = current.start_date if current is not None else None
        existing_end = current.end_date if current is not None else None
        effective_start = existing_start or purchase.purchased_at or now
        effective_end = _latest(existing_end, purchase.expires_at)
        is_active = effective_end is not None and effective_end > now
        status = SubscriptionStatus.ACTIVE if is_active else SubscriptionStatus.EXPIRED

        values = SubscriptionWrite(
            plan_key=mapping.plan_key,
            status=status,
            start_date=effective_start,
            end_date=effective_end,
            auto_renew=is_active and auto_renew is not False,
            canceled_at=None,
        )
        if current is not None:
            await self.repository.update_subscription(current.id, values)
        else:
            await self.repository.insert_subscription(user_id, values)

        logger.info(
            "subscription_applied",
            user_id=user_id,
            plan_key=mapping.plan_key,
            status=status.value,
            end_date=effective_end.isoformat() if effective_end else None,
        )

        await self.sync_profile_plan(user_id, mapping.plan_key if is_active else None)

        return SubscriptionEffect(plan_key=mapping.plan_key, status=status, end_date=effective_end)

    @staticmethod
    def _may_reactivate(current: SubscriptionData, purchase: PurchaseRecord) -> bool:
        """A cancelled row only comes back for a purchase made after the cancel."""
        if current.canceled_at is None:
            return True
        return purchase.purchased_at is not None and purchase.purchased_at > current.canceled_at

    async def _apply_coins(
        self,
        user_id: str,
        mapping: ProductMapping,
        purchase: PurchaseRecord,
        is_new_transaction: bool,
    ) -> CoinsEffect:
        if not mapping.pack_id:
            raise DataIntegrityError(
                "Coins mapping has no pack_id",
                details={"storeProductId": mapping.store_product_id},
            )

        pack = await self.repository.get_coin_pack(mapping.pack_id)
        coins = _pack_quantity(pack, mapping.pack_id)

        if not is_new_transaction:
            balance = await self.repository.get_coin_balance(user_id)
            logger.info(
                "coins_already_credited",
                user_id=user_id,
                pack_id=mapping.pack_id,
                transaction_id=purchase.provider_tx_id,
            )
            return CoinsEffect(pack_id=mapping.pack_id, coins_added=0, coins_balance=balance)

        balance = await self.repository.add_coins(user_id, coins)
        logger.info(
            "coins_credited",
            user_id=user_id,
            pack_id=mapping.pack_id,
            coins=coins,
            balance=balance,
        )

        await self._record_ledger_entry(user_id, mapping, purchase, coins, balance)

        return CoinsEffect(pack_id=mapping.pack_id, coins_added=coins, coins_balance=balance)

    async def _record_ledger_entry(
        self,
        user_id: str,
        mapping: ProductMapping,
        purchase: PurchaseRecord,
        coins: int,
        balance: int,
    ) -> None:
        """Append the audit entry; failures never undo the credit."""
        metadata = {
            "provider": purchase.provider,
            "platform": mapping.platform,
            "transactionId": purchase.provider_tx_id,
            "productId": purchase.store_product_id,
            "packId": mapping.pack_id,
        }
        for kind in (LEDGER_KIND, LEDGER_FALLBACK_KIND):
            try:
                await self.repository.insert_ledger_entry(
                    LedgerEntryIntent(
                        user_id=user_id,
                        delta=coins,
                        kind=kind,
                        ref_type=LEDGER_REF_TYPE,
                        ref_id=ledger_ref_id(purchase),
                        balance_after=balance,
                        metadata=metadata,
                    )
                )
                return
            except PersistenceError as exc:
                metrics.audit_ledger_failures_total.labels(attempt=kind).inc()
                logger.warning(
                    "audit_ledger_write_failed",
                    user_id=user_id,
                    kind=kind,
                    transaction_id=purchase.provider_tx_id,
                    error=exc.message,
                )

        logger.error(
            "audit_ledger_write_abandoned",
            user_id=user_id,
            transaction_id=purchase.provider_tx_id,
            delta=coins,
        )

    async def sync_profile_plan(self, user_id: str, active_plan: str | None) -> str:
        """
        Write the denormalized profile plan.

        The active plan wins; otherwise permanent-grant holders keep ``vip``
        and everyone else drops to ``free``. Write failures are logged, not raised.
        """
        if active_plan:
            plan = active_plan
        elif await self.repository.has_permanent_subscription(user_id):
            plan = PERMANENT_PLAN
        else:
            plan = FREE_PLAN

        await self._set_profile_plan(user_id, plan)
        return plan

    async def _set_profile_plan(self, user_id: str, plan: str) -> None:
        try:
            await self.repository.set_profile_plan(user_id, plan)
        except PersistenceError as exc:
            logger.warning(
                "profile_plan_sync_failed",
                user_id=user_id,
                plan=plan,
                error=exc.message,
            )

    async def cancel(self, user_id: str) -> SubscriptionData:
        """
        Expire the user's current non-permanent subscription now.

        Raises:
            NotFoundError: If there is no subscription row to cancel
        """
        current = await self.repository.get_current_subscription(user_id)
        if current is None:
            raise NotFoundError("No subscription found", details={"userId": user_id})

        now = self._now()
        cancelled = await self.repository.update_subscription(
            current.id,
            SubscriptionWrite(
                plan_key=current.plan_key,
                status=SubscriptionStatus.EXPIRED,
                start_date=current.start_date,
                end_date=now,
                auto_renew=False,
                canceled_at=now,
            ),
        )
        logger.info("subscription_cancelled", user_id=user_id, subscription_id=current.id)

        if await self.repository.has_permanent_subscription(user_id):
            logger.info("cancel_kept_permanent_plan", user_id=user_id)
        else:
            await self._set_profile_plan(user_id, FREE_PLAN)

        return cancelled
