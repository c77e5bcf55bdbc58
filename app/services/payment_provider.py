"""
Purchase Verifier Protocol - Provider-agnostic store verification interface.

Orchestration code only ever talks to a VerifierRegistry; adding a store means
registering one more PurchaseVerifier.
"""

from typing import Protocol

from structlog import get_logger

from app.config import Settings
from app.exceptions import ProviderError, ValidationError
from app.models.apple_storekit import APPLE_PROVIDER, AppleStoreKitConfig
from app.models.domain import PurchaseRecord, RenewalCandidate

logger = get_logger(__name__)


class PurchaseVerifier(Protocol):
    """
    Store verification protocol.

    Any store (Apple, Google, ...) must implement this interface.
    """

    provider: str

    async def verify(self, transaction_ref: str) -> PurchaseRecord:
        """
        Verify a transaction with the store and return the normalized purchase.

        Raises:
            ProviderError: If the store rejects the call or is unreachable
            DecodeError: If the store payload is malformed
            ProviderNotImplementedError: If the store is not supported yet
        """
        ...

    async def get_subscription_statuses(
        self, original_transaction_id: str
    ) -> list[RenewalCandidate]:
        """
        Fetch every transaction/renewal pair known for a subscription chain.

        Raises:
            ProviderError: If the store rejects the call or is unreachable
            DecodeError: If the store payload is malformed
            ProviderNotImplementedError: If the store is not supported yet
        """
        ...


class UnconfiguredVerifier:
    """Placeholder for a known store whose credentials are missing."""

    def __init__(self, provider: str) -> None:
        self.provider = provider

    def _fail(self) -> ProviderError:
        return ProviderError(
            f"{self.provider.capitalize()} verification is not configured", status_code=503
        )

    async def verify(self, transaction_ref: str) -> PurchaseRecord:
        raise self._fail()

    async def get_subscription_statuses(
        self, original_transaction_id: str
    ) -> list[RenewalCandidate]:
        raise self._fail()


class VerifierRegistry:
    """Mapping from provider name to its verifier."""

    def __init__(self, verifiers: list[PurchaseVerifier] | None = None) -> None:
        self._verifiers: dict[str, PurchaseVerifier] = {}
        for verifier in verifiers or []:
            self.register(verifier)

    def register(self, verifier: PurchaseVerifier) -> None:
        self._verifiers[verifier.provider] = verifier

    def get(self, provider: str) -> PurchaseVerifier:
        """
        Look up the verifier for a provider.

        Raises:
            ValidationError: If no verifier is registered under that name
        """
        verifier = self._verifiers.get(provider)
        if verifier is None:
            raise ValidationError("Unsupported provider", details={"provider": provider})
        return verifier

    @property
    def providers(self) -> list[str]:
        return sorted(self._verifiers)


def build_verifier_registry(settings: Settings) -> VerifierRegistry:
    """Build the process-wide registry from settings."""
    from app.services.apple_storekit_provider import AppleStoreKitVerifier
    from app.services.google_play_provider import GooglePlayVerifier

    registry = VerifierRegistry([GooglePlayVerifier()])

    if settings.apple_configured:
        registry.register(
            AppleStoreKitVerifier(
                AppleStoreKitConfig(
                    key_id=settings.apple_key_id,
                    issuer_id=settings.apple_issuer_id,
                    private_key=settings.apple_private_key,
                    environment=settings.apple_environment,
                    bundle_id=settings.apple_bundle_id or None,
                    token_ttl_seconds=settings.apple_jwt_ttl_seconds,
                    request_timeout_seconds=settings.apple_request_timeout_seconds,
                )
            )
        )
    else:
        logger.warning("apple_storekit_not_configured")
        registry.register(UnconfiguredVerifier(APPLE_PROVIDER))

    return registry
