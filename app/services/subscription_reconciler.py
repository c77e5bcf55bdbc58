"""
Subscription Reconciler - Restore and re-sync subscriptions against the store.

Restore re-verifies client-submitted references one by one; sync asks the
store for the authoritative renewal status of the user's subscription chain
and applies the latest-expiring mappable candidate.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from app.db.repository import IAPRepository
from app.exceptions import IAPError, NotFoundError, UnknownProductError, ValidationError
from app.models.domain import (
    NewTransaction,
    ProductMapping,
    RenewalCandidate,
    RestoreItemResult,
    ResyncReport,
    SyncResult,
)
from app.observability.metrics import metrics
from app.services.entitlements import EntitlementApplier
from app.services.payment_provider import PurchaseVerifier, VerifierRegistry
from app.services.product_mapping import ProductMapper
from app.services.transaction_ledger import TransactionLedger

logger = get_logger(__name__)

NOT_RESTORABLE = "not_restorable"
OWNED_BY_OTHER_USER = "owned_by_other_user"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def dedupe_references(references: Iterable[str]) -> list[str]:
    """Strip, drop blanks and remove duplicates while keeping submission order."""
    return list(dict.fromkeys(ref.strip() for ref in references if ref and ref.strip()))


class SubscriptionReconciler:
    """Restore and sync flows over the verifier/mapper/ledger/applier pipeline."""

    def __init__(
        self,
        repository: IAPRepository,
        registry: VerifierRegistry,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.mapper = ProductMapper(repository)
        self.ledger = TransactionLedger(repository)
        self.applier = EntitlementApplier(repository, now=now)
        self._now = now

    # ========================================================================
    # Restore
    # ========================================================================

    async def restore(
        self,
        platform: str,
        provider: str,
        user_id: str,
        transaction_refs: Iterable[str],
    ) -> list[RestoreItemResult]:
        """
        Re-verify and re-apply each submitted subscription transaction.

        Each reference runs in its own savepoint; a failing item is reported
        in its result and never aborts the batch.

        Raises:
            ValidationError: If the provider is unknown or no reference was given
        """
        verifier = self.registry.get(provider)
        references = dedupe_references(transaction_refs)
        if not references:
            raise ValidationError("Missing transactionIds or transactionId")

        results = []
        for reference in references:
            results.append(await self._restore_one(verifier, platform, user_id, reference))

        logger.info(
            "restore_completed",
            user_id=user_id,
            provider=provider,
            total=len(results),
            failed=sum(1 for r in results if r.error),
            skipped=sum(1 for r in results if r.skipped),
        )
        return results

    async def _restore_one(
        self,
        verifier: PurchaseVerifier,
        platform: str,
        user_id: str,
        reference: str,
    ) -> RestoreItemResult:
        try:
            async with self.repository.savepoint():
                purchase = await verifier.verify(reference)
                mapping = await self.mapper.resolve(
                    platform, verifier.provider, purchase.store_product_id
                )
                if not mapping.is_subscription:
                    return RestoreItemResult(
                        tx=reference,
                        product_id=purchase.store_product_id,
                        skipped=True,
                        reason=NOT_RESTORABLE,
                    )

                inserted = None
                existing = await self.ledger.exists(verifier.provider, purchase.provider_tx_id)
                if existing is None:
                    inserted = await self.ledger.insert_if_new(
                        NewTransaction.from_purchase(user_id, platform, purchase, mapping.kind)
                    )
                    if inserted is None:
                        existing = await self.ledger.exists(
                            verifier.provider, purchase.provider_tx_id
                        )
                if existing is not None and existing.user_id != user_id:
                    logger.warning(
                        "restore_transaction_owned_by_other_user",
                        user_id=user_id,
                        owner_id=existing.user_id,
                        transaction_id=existing.transaction_id,
                    )
                    return RestoreItemResult(
                        tx=reference,
                        product_id=purchase.store_product_id,
                        skipped=True,
                        reason=OWNED_BY_OTHER_USER,
                    )
                effect = await self.applier.apply(
                    user_id, mapping, purchase, is_new_transaction=inserted is not None
                )
                return RestoreItemResult(
                    tx=reference, product_id=purchase.store_product_id, effect=effect
                )
        except IAPError as exc:
            logger.warning(
                "restore_item_failed",
                user_id=user_id,
                transaction_ref=reference,
                error=exc.message,
                status_code=exc.status_code,
            )
            return RestoreItemResult(tx=reference, error=exc.message, details=exc.details)

    # ========================================================================
    # Sync
    # ========================================================================

    async def sync(self, user_id: str) -> SyncResult:
        """
        Re-derive the user's subscription from the store's renewal status.

        Raises:
            NotFoundError: No subscription transaction, or no mappable candidate
            ProviderError: If the store call fails
        """
        latest = await self.repository.get_latest_subscription_transaction(user_id)
        if latest is None:
            metrics.subscription_syncs_total.labels(outcome="not_found").inc()
            raise NotFoundError(
                "No subscription transaction found", details={"userId": user_id}
            )

        verifier = self.registry.get(latest.provider)

        original_id = latest.original_transaction_id
        if not original_id:
            purchase = await verifier.verify(latest.transaction_id)
            original_id = purchase.original_tx_id or purchase.provider_tx_id

        candidates = await verifier.get_subscription_statuses(original_id)
        best = await self._select_best(latest.platform, latest.provider, candidates)
        if best is None:
            metrics.subscription_syncs_total.labels(outcome="not_found").inc()
            raise NotFoundError(
                "No mappable subscription found for sync",
                details={"originalTransactionId": original_id, "candidates": len(candidates)},
            )

        candidate, mapping = best
        effect = await self.applier.apply(
            user_id,
            mapping,
            candidate.purchase,
            is_new_transaction=False,
            auto_renew=candidate.auto_renew,
        )

        metrics.subscription_syncs_total.labels(outcome="synced").inc()
        logger.info(
            "subscription_synced",
            user_id=user_id,
            original_transaction_id=original_id,
            transaction_id=candidate.purchase.provider_tx_id,
            expires_at=candidate.purchase.expires_at.isoformat()
            if candidate.purchase.expires_at
            else None,
        )
        return SyncResult(
            original_transaction_id=original_id, best=candidate.purchase, effect=effect
        )

    async def _select_best(
        self,
        platform: str,
        provider: str,
        candidates: list[RenewalCandidate],
    ) -> tuple[RenewalCandidate, ProductMapping] | None:
        """Latest-expiring candidate that maps to a subscription product."""
        best: tuple[RenewalCandidate, ProductMapping] | None = None
        best_expiry: datetime | None = None
        for candidate in candidates:
            expires_at = candidate.purchase.expires_at
            if expires_at is None:
                continue
            try:
                mapping = await self.mapper.resolve(
                    platform, provider, candidate.purchase.store_product_id
                )
            except UnknownProductError:
                logger.info(
                    "sync_candidate_unmapped",
                    product_id=candidate.purchase.store_product_id,
                )
                continue
            if not mapping.is_subscription:
                continue
            if best_expiry is None or expires_at > best_expiry:
                best = (candidate, mapping)
                best_expiry = expires_at
        return best

    async def resync_due(self, limit: int, lookback_days: int) -> ResyncReport:
        """
        Sync every user whose subscription is active or ended recently.

        Per-user failures roll back that user's savepoint and are counted.
        """
        ending_after = self._now() - timedelta(days=lookback_days)
        user_ids = await self.repository.list_users_due_for_sync(ending_after, limit)

        synced = not_found = failed = 0
        for user_id in user_ids:
            try:
                async with self.repository.savepoint():
                    await self.sync(user_id)
                synced += 1
            except NotFoundError:
                not_found += 1
            except IAPError as exc:
                failed += 1
                metrics.subscription_syncs_total.labels(outcome="error").inc()
                logger.warning(
                    "resync_user_failed",
                    user_id=user_id,
                    error=exc.message,
                    status_code=exc.status_code,
                )

        report = ResyncReport(synced=synced, not_found=not_found, failed=failed)
        logger.info(
            "resync_completed",
            candidates=len(user_ids),
            synced=report.synced,
            not_found=report.not_found,
            failed=report.failed,
        )
        return report
