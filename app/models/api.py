"""
API Models - Pydantic models for request/response validation.

Request and response bodies use camelCase on the wire and snake_case in Python.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ProductKind(str, Enum):
    """Business effect a store product maps to."""

    SUBSCRIPTION = "subscription"
    COINS = "coins"


class SubscriptionStatus(str, Enum):
    """Subscription row status."""

    ACTIVE = "active"
    EXPIRED = "expired"


class TransactionStatus(str, Enum):
    """Ledger transaction status (fixed at creation)."""

    PAID = "paid"


FREE_PLAN = "free"
PERMANENT_PLAN = "vip"


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting either casing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Request Models
# ============================================================================


class VerifyRequest(CamelModel):
    """POST /iap/verify request body."""

    platform: str = Field(..., min_length=1, max_length=32)
    provider: str = Field(..., min_length=1, max_length=32)
    user_id: str = Field(..., min_length=1, max_length=255)
    transaction_id: str = Field(..., min_length=1, max_length=255)


class RestoreRequest(CamelModel):
    """POST /iap/restore request body."""

    platform: str = Field(..., min_length=1, max_length=32)
    provider: str = Field(..., min_length=1, max_length=32)
    user_id: str = Field(..., min_length=1, max_length=255)
    transaction_ids: list[str] | None = None
    transaction_id: str | None = None

    @model_validator(mode="after")
    def require_transaction_reference(self) -> "RestoreRequest":
        """At least one transaction reference must be submitted."""
        if not self.references:
            raise ValueError("Missing transactionIds or transactionId")
        return self

    @property
    def references(self) -> list[str]:
        """Submitted references, list form taking precedence over the single field."""
        if self.transaction_ids is not None:
            return [str(ref) for ref in self.transaction_ids if str(ref)]
        return [self.transaction_id] if self.transaction_id else []


class UserRequest(CamelModel):
    """POST /iap/cancel and /iap/sync request body."""

    user_id: str = Field(..., min_length=1, max_length=255)


# ============================================================================
# Response Models
# ============================================================================


class EffectResponse(CamelModel):
    """Entitlement effect applied for a purchase."""

    kind: ProductKind
    plan_key: str | None = None
    status: SubscriptionStatus | None = None
    end_date: datetime | None = None
    reactivated: bool | None = None
    pack_id: str | None = None
    coins_added: int | None = None
    coins_balance: int | None = None


class TransactionSummary(CamelModel):
    """Public view of a ledger transaction."""

    id: int
    provider: str
    transaction_id: str
    product_id: str
    product_type: str
    status: str


class SubscriptionResponse(CamelModel):
    """Public view of a subscription row."""

    id: int
    plan_key: str
    status: SubscriptionStatus
    start_date: datetime | None
    end_date: datetime | None
    auto_renew: bool
    is_permanent: bool
    canceled_at: datetime | None = None


class VerifyResponse(CamelModel):
    """POST /iap/verify response."""

    ok: bool = True
    already_processed: bool = False
    effect: EffectResponse | None = None
    transaction: TransactionSummary | None = None
    note: str | None = None


class RestoreItemResponse(CamelModel):
    """Outcome of restoring a single transaction reference."""

    tx: str
    product_id: str | None = None
    effect: EffectResponse | None = None
    skipped: bool = False
    reason: str | None = None
    error: str | None = None
    details: Any | None = None


class RestoreResponse(CamelModel):
    """POST /iap/restore response."""

    ok: bool = True
    results: list[RestoreItemResponse]


class CancelResponse(CamelModel):
    """POST /iap/cancel response."""

    ok: bool = True
    subscription: SubscriptionResponse


class SyncResponse(CamelModel):
    """POST /iap/sync response."""

    ok: bool = True
    original_transaction_id: str
    transaction_id: str
    product_id: str
    expires_at: datetime
    effect: EffectResponse


class UserSubscriptionResponse(CamelModel):
    """GET /iap/subscription/{userId} response."""

    ok: bool = True
    plan: str | None = None
    coins_balance: int = 0
    subscription: SubscriptionResponse | None = None


class ErrorResponse(CamelModel):
    """Failure envelope shared by every IAP endpoint."""

    ok: bool = False
    error: str
    details: Any | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    timestamp: str
