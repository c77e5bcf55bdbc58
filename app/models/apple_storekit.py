"""
Apple StoreKit domain models - Immutable dataclasses for purchase verification.

Apple App Store Server API v2 returns transaction and renewal data as JWS
(JSON Web Signature) strings whose payload segment is base64url JSON.
"""

from dataclasses import dataclass
from datetime import datetime

from app.models.domain import PurchaseRecord

APPLE_PROVIDER = "apple"


@dataclass(frozen=True)
class AppleTransactionInfo:
    """Decoded Apple StoreKit transaction payload."""

    transaction_id: str  # Unique per purchase/renewal
    original_transaction_id: str | None  # First transaction in subscription chain
    product_id: str  # Product identifier from App Store Connect
    purchase_date: datetime | None
    expires_date: datetime | None = None  # Subscriptions only
    bundle_id: str | None = None
    environment: str | None = None  # "Production" or "Sandbox"
    type: str | None = None  # "Auto-Renewable Subscription", "Consumable", ...
    revocation_date: datetime | None = None

    def is_sandbox(self) -> bool:
        """Check if this is a sandbox (test) transaction."""
        return (self.environment or "").lower() == "sandbox"

    def to_purchase_record(self, raw: dict[str, object]) -> PurchaseRecord:
        return PurchaseRecord(
            provider=APPLE_PROVIDER,
            provider_tx_id=self.transaction_id,
            original_tx_id=self.original_transaction_id,
            store_product_id=self.product_id,
            purchased_at=self.purchase_date,
            expires_at=self.expires_date,
            raw=raw,
        )


@dataclass(frozen=True)
class AppleRenewalInfo:
    """Subscription renewal information from Apple."""

    original_transaction_id: str | None
    product_id: str | None
    auto_renew_status: int | None  # 0: off, 1: on

    def will_renew(self) -> bool | None:
        """Whether the subscription will auto-renew, None when Apple did not say."""
        if self.auto_renew_status is None:
            return None
        return self.auto_renew_status == 1


@dataclass(frozen=True)
class AppleStoreKitConfig:
    """Configuration for Apple App Store Server API."""

    key_id: str  # Key ID from App Store Connect
    issuer_id: str  # Issuer ID from App Store Connect
    private_key: str  # Private key (.p8 contents)
    environment: str = "production"  # "production" or "sandbox"
    bundle_id: str | None = None  # Added as the "bid" claim when set
    token_ttl_seconds: int = 300
    request_timeout_seconds: float = 30.0

    @property
    def api_base_url(self) -> str:
        """Get the API base URL for the configured environment."""
        if self.environment.lower() == "sandbox":
            return "https://api.storekit-sandbox.itunes.apple.com"
        return "https://api.storekit.itunes.apple.com"

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.key_id:
            raise ValueError("StoreKit key_id is required")
        if not self.issuer_id:
            raise ValueError("StoreKit issuer_id is required")
        if not self.private_key:
            raise ValueError("StoreKit private_key is required")
        if self.environment.lower() not in ("production", "sandbox"):
            raise ValueError("Environment must be 'production' or 'sandbox'")
        if self.token_ttl_seconds <= 0:
            raise ValueError("token_ttl_seconds must be positive")
