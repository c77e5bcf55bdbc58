"""
Domain Models - Internal business logic models using dataclasses.

Immutable snapshots passed between the verifier, the repository and the
entitlement services. ORM rows never leave the repository.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.models.api import (
    EffectResponse,
    ProductKind,
    SubscriptionResponse,
    SubscriptionStatus,
    TransactionSummary,
)


@dataclass(frozen=True)
class PurchaseRecord:
    """Normalized verifier output. Never persisted as-is."""

    provider: str
    provider_tx_id: str
    original_tx_id: str | None
    store_product_id: str
    purchased_at: datetime | None
    expires_at: datetime | None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Validate identifiers."""
        if not self.provider_tx_id:
            raise ValueError("provider_tx_id cannot be empty")
        if not self.store_product_id:
            raise ValueError("store_product_id cannot be empty")


@dataclass(frozen=True)
class RenewalCandidate:
    """One transaction/renewal-info pair reported by a subscription status call."""

    purchase: PurchaseRecord
    auto_renew: bool | None = None


@dataclass(frozen=True)
class ProductMapping:
    """Store product -> business effect. Kind is kept raw so bad rows fail at apply time."""

    platform: str
    provider: str
    store_product_id: str
    kind: str
    plan_key: str | None = None
    pack_id: str | None = None

    @property
    def is_subscription(self) -> bool:
        return self.kind == ProductKind.SUBSCRIPTION.value


@dataclass(frozen=True)
class NewTransaction:
    """Ledger row about to be inserted."""

    user_id: str
    platform: str
    provider: str
    transaction_id: str
    original_transaction_id: str | None
    product_id: str
    product_type: str
    purchased_at: datetime | None
    expires_at: datetime | None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_purchase(
        cls, user_id: str, platform: str, purchase: PurchaseRecord, product_type: str
    ) -> "NewTransaction":
        return cls(
            user_id=user_id,
            platform=platform,
            provider=purchase.provider,
            transaction_id=purchase.provider_tx_id,
            original_transaction_id=purchase.original_tx_id,
            product_id=purchase.store_product_id,
            product_type=product_type,
            purchased_at=purchase.purchased_at,
            expires_at=purchase.expires_at,
            raw=purchase.raw,
        )


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger transaction snapshot."""

    id: int
    user_id: str
    platform: str
    provider: str
    transaction_id: str
    original_transaction_id: str | None
    product_id: str
    product_type: str
    status: str
    purchased_at: datetime | None
    expires_at: datetime | None
    created_at: datetime | None = None

    def to_summary(self) -> TransactionSummary:
        return TransactionSummary(
            id=self.id,
            provider=self.provider,
            transaction_id=self.transaction_id,
            product_id=self.product_id,
            product_type=self.product_type,
            status=self.status,
        )


@dataclass(frozen=True)
class SubscriptionData:
    """Immutable subscription row snapshot."""

    id: int
    user_id: str
    plan_key: str
    status: SubscriptionStatus
    start_date: datetime | None
    end_date: datetime | None
    auto_renew: bool
    is_permanent: bool
    canceled_at: datetime | None = None

    def to_response(self) -> SubscriptionResponse:
        return SubscriptionResponse(
            id=self.id,
            plan_key=self.plan_key,
            status=self.status,
            start_date=self.start_date,
            end_date=self.end_date,
            auto_renew=self.auto_renew,
            is_permanent=self.is_permanent,
            canceled_at=self.canceled_at,
        )


@dataclass(frozen=True)
class SubscriptionWrite:
    """Column values written to a subscription row."""

    plan_key: str
    status: SubscriptionStatus
    start_date: datetime | None
    end_date: datetime | None
    auto_renew: bool
    canceled_at: datetime | None = None


@dataclass(frozen=True)
class CoinPackData:
    """Coin pack reference data."""

    pack_id: str
    coins: float | int | None


@dataclass(frozen=True)
class LedgerEntryIntent:
    """Audit ledger entry before persistence."""

    user_id: str
    delta: int
    kind: str
    ref_type: str
    ref_id: str
    balance_after: int
    metadata: dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Entitlement Effects
# ============================================================================


@dataclass(frozen=True)
class SubscriptionEffect:
    """Result of applying a subscription purchase."""

    plan_key: str
    status: SubscriptionStatus
    end_date: datetime | None
    reactivated: bool = True

    @property
    def kind(self) -> ProductKind:
        return ProductKind.SUBSCRIPTION

    def to_response(self) -> EffectResponse:
        return EffectResponse(
            kind=self.kind,
            plan_key=self.plan_key,
            status=self.status,
            end_date=self.end_date,
            reactivated=self.reactivated,
        )


@dataclass(frozen=True)
class CoinsEffect:
    """Result of applying a coin pack purchase."""

    pack_id: str
    coins_added: int
    coins_balance: int | None

    @property
    def kind(self) -> ProductKind:
        return ProductKind.COINS

    def to_response(self) -> EffectResponse:
        return EffectResponse(
            kind=self.kind,
            pack_id=self.pack_id,
            coins_added=self.coins_added,
            coins_balance=self.coins_balance,
        )


Effect = SubscriptionEffect | CoinsEffect


@dataclass(frozen=True)
class RestoreItemResult:
    """Per-reference restore outcome."""

    tx: str
    product_id: str | None = None
    effect: Effect | None = None
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    details: Any | None = None


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a subscription re-sync against the store."""

    original_transaction_id: str
    best: PurchaseRecord
    effect: Effect


@dataclass(frozen=True)
class ResyncReport:
    """Counts from a batch re-sync run."""

    synced: int = 0
    not_found: int = 0
    failed: int = 0
