"""
Google Play Verifier.

Google Play verification is not available yet. Both operations fail
immediately with ProviderNotImplementedError so callers never mistake the
stub for an empty but successful verification.
"""

from structlog import get_logger

from app.exceptions import ProviderNotImplementedError
from app.models.domain import PurchaseRecord, RenewalCandidate

logger = get_logger(__name__)

GOOGLE_PROVIDER = "google"


class GooglePlayVerifier:
    """Google Play In-App Billing verifier (not implemented)."""

    provider = GOOGLE_PROVIDER

    async def verify(self, transaction_ref: str) -> PurchaseRecord:
        logger.warning("google_play_verification_unavailable", transaction_ref=transaction_ref)
        raise ProviderNotImplementedError(self.provider)

    async def get_subscription_statuses(
        self, original_transaction_id: str
    ) -> list[RenewalCandidate]:
        logger.warning(
            "google_play_status_unavailable", original_transaction_id=original_transaction_id
        )
        raise ProviderNotImplementedError(self.provider)
