"""
IAP Service - Orchestrates verify, restore, cancel, sync and subscription reads.

One database transaction per call: the service commits once the primary
effect is written and rolls back on any IAPError before re-raising it to the
API layer.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

from structlog import get_logger

from app.config import settings
from app.db.repository import IAPRepository
from app.exceptions import IAPError
from app.models.api import (
    CancelResponse,
    RestoreItemResponse,
    RestoreRequest,
    RestoreResponse,
    SyncResponse,
    UserSubscriptionResponse,
    VerifyRequest,
    VerifyResponse,
)
from app.models.domain import (
    NewTransaction,
    ProductMapping,
    PurchaseRecord,
    RestoreItemResult,
    ResyncReport,
    TransactionData,
)
from app.observability.metrics import metrics
from app.observability.tracing import add_span_attributes, get_tracer
from app.services.entitlements import EntitlementApplier
from app.services.payment_provider import VerifierRegistry
from app.services.product_mapping import ProductMapper
from app.services.subscription_reconciler import SubscriptionReconciler
from app.services.transaction_ledger import TransactionLedger

logger = get_logger(__name__)
tracer = get_tracer(__name__)

T = TypeVar("T")

ALREADY_PROCESSED_NOTE = "Transaction already processed."
RACE_LOST_NOTE = "Transaction already inserted by another request (unique constraint)."
OTHER_OWNER_NOTE = "Transaction already processed for another user."


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _restore_item_response(result: RestoreItemResult) -> RestoreItemResponse:
    return RestoreItemResponse(
        tx=result.tx,
        product_id=result.product_id,
        effect=result.effect.to_response() if result.effect else None,
        skipped=result.skipped,
        reason=result.reason,
        error=result.error,
        details=result.details,
    )


class IAPService:
    """Request-level coordination of the purchase pipeline."""

    def __init__(
        self,
        repository: IAPRepository,
        registry: VerifierRegistry,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the service with a repository bound to one unit of work."""
        self.repository = repository
        self.registry = registry
        self.mapper = ProductMapper(repository)
        self.ledger = TransactionLedger(repository)
        self.applier = EntitlementApplier(repository, now=now)
        self.reconciler = SubscriptionReconciler(repository, registry, now=now)

    async def _in_transaction(self, operation: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run work, commit on success, roll back on IAPError."""
        try:
            result = await work()
        except IAPError as exc:
            await self.repository.rollback()
            logger.warning(
                "iap_operation_failed",
                operation=operation,
                error=exc.message,
                status_code=exc.status_code,
            )
            raise
        await self.repository.commit()
        return result

    # ========================================================================
    # Verify
    # ========================================================================

    async def verify(self, request: VerifyRequest) -> VerifyResponse:
        """
        Verify a purchase with its store and apply its effect exactly once.

        Replays (already recorded transactions, or losing a concurrent insert
        race) re-apply the idempotent effect and report alreadyProcessed.
        """
        with tracer.start_as_current_span("iap.verify") as span:
            add_span_attributes(
                span,
                provider=request.provider,
                platform=request.platform,
                user_id=request.user_id,
            )
            try:
                response = await self._in_transaction("verify", lambda: self._verify(request))
            except IAPError:
                metrics.record_verification(request.provider, "error")
                raise

            metrics.record_verification(
                request.provider, "already_processed" if response.already_processed else "new"
            )
            add_span_attributes(span, already_processed=response.already_processed)
            return response

    async def _verify(self, request: VerifyRequest) -> VerifyResponse:
        verifier = self.registry.get(request.provider)
        purchase = await verifier.verify(request.transaction_id)
        mapping = await self.mapper.resolve(
            request.platform, request.provider, purchase.store_product_id
        )

        # Fast path only; the insert below is the real guard
        existing = await self.ledger.exists(request.provider, purchase.provider_tx_id)
        if existing is not None:
            return await self._replay(request, existing, mapping, purchase, ALREADY_PROCESSED_NOTE)

        inserted = await self.ledger.insert_if_new(
            NewTransaction.from_purchase(
                request.user_id, request.platform, purchase, mapping.kind
            )
        )
        if inserted is None:
            winner = await self.ledger.exists(request.provider, purchase.provider_tx_id)
            return await self._replay(request, winner, mapping, purchase, RACE_LOST_NOTE)

        effect = await self.applier.apply(
            request.user_id, mapping, purchase, is_new_transaction=True
        )
        logger.info(
            "iap_purchase_verified",
            user_id=request.user_id,
            provider=request.provider,
            transaction_id=purchase.provider_tx_id,
            product_id=purchase.store_product_id,
            kind=mapping.kind,
        )
        return VerifyResponse(effect=effect.to_response(), transaction=inserted.to_summary())

    async def _replay(
        self,
        request: VerifyRequest,
        existing: TransactionData | None,
        mapping: ProductMapping,
        purchase: PurchaseRecord,
        note: str,
    ) -> VerifyResponse:
        summary = existing.to_summary() if existing is not None else None
        if existing is not None and existing.user_id != request.user_id:
            logger.warning(
                "iap_transaction_owned_by_other_user",
                user_id=request.user_id,
                owner_id=existing.user_id,
                transaction_id=existing.transaction_id,
            )
            return VerifyResponse(already_processed=True, transaction=summary, note=OTHER_OWNER_NOTE)

        effect = await self.applier.apply(
            request.user_id, mapping, purchase, is_new_transaction=False
        )
        logger.info(
            "iap_purchase_replayed",
            user_id=request.user_id,
            provider=request.provider,
            transaction_id=purchase.provider_tx_id,
        )
        return VerifyResponse(
            already_processed=True,
            effect=effect.to_response(),
            transaction=summary,
            note=note,
        )

    # ========================================================================
    # Restore / Sync / Cancel
    # ========================================================================

    async def restore(self, request: RestoreRequest) -> RestoreResponse:
        """Restore a batch of subscription transactions; per-item errors are reported inline."""
        with tracer.start_as_current_span("iap.restore") as span:
            add_span_attributes(span, provider=request.provider, user_id=request.user_id)
            results = await self._in_transaction(
                "restore",
                lambda: self.reconciler.restore(
                    request.platform, request.provider, request.user_id, request.references
                ),
            )
            return RestoreResponse(results=[_restore_item_response(r) for r in results])

    async def sync(self, user_id: str) -> SyncResponse:
        with tracer.start_as_current_span("iap.sync") as span:
            add_span_attributes(span, user_id=user_id)
            result = await self._in_transaction("sync", lambda: self.reconciler.sync(user_id))
            return SyncResponse(
                original_transaction_id=result.original_transaction_id,
                transaction_id=result.best.provider_tx_id,
                product_id=result.best.store_product_id,
                expires_at=result.best.expires_at,
                effect=result.effect.to_response(),
            )

    async def cancel(self, user_id: str) -> CancelResponse:
        with tracer.start_as_current_span("iap.cancel") as span:
            add_span_attributes(span, user_id=user_id)
            cancelled = await self._in_transaction("cancel", lambda: self.applier.cancel(user_id))
            return CancelResponse(subscription=cancelled.to_response())

    async def resync_due(
        self, limit: int | None = None, lookback_days: int | None = None
    ) -> ResyncReport:
        """Batch re-sync of recently active subscriptions (maintenance script)."""
        return await self._in_transaction(
            "resync",
            lambda: self.reconciler.resync_due(
                limit or settings.sync_batch_size,
                lookback_days if lookback_days is not None else settings.sync_lookback_days,
            ),
        )

    # ========================================================================
    # Read
    # ========================================================================

    async def get_subscription(self, user_id: str) -> UserSubscriptionResponse:
        """Authoritative subscription row (permanent rows included), plan and coin balance."""
        subscription = await self.repository.get_current_subscription(
            user_id, include_permanent=True
        )
        plan = await self.repository.get_profile_plan(user_id)
        balance = await self.repository.get_coin_balance(user_id)
        return UserSubscriptionResponse(
            plan=plan,
            coins_balance=balance or 0,
            subscription=subscription.to_response() if subscription else None,
        )
