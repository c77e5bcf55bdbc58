"""
Apple StoreKit Verifier.

Uses Apple App Store Server API v2 for transaction lookup and subscription status.
https://developer.apple.com/documentation/appstoreserverapi
"""

import base64
import binascii
import time
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
import jwt
from structlog import get_logger

from app.exceptions import DecodeError, ProviderError
from app.models.apple_storekit import (
    APPLE_PROVIDER,
    AppleRenewalInfo,
    AppleStoreKitConfig,
    AppleTransactionInfo,
)
from app.models.domain import PurchaseRecord, RenewalCandidate
from app.observability.metrics import metrics

logger = get_logger(__name__)

APPLE_AUDIENCE = "appstoreconnect-v1"
# Backdate iat so small clock skew with Apple does not reject fresh tokens
CLOCK_SKEW_SECONDS = 10


def normalize_timestamp(value: object) -> datetime | None:
    """
    Normalize an Apple date to an aware UTC datetime.

    Accepts epoch milliseconds (int or digit string) and ISO-8601 strings.
    Missing values yield None; anything else raises DecodeError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise DecodeError(f"Invalid timestamp: {value!r}")
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return datetime.fromtimestamp(int(text) / 1000, tz=UTC)
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    except (ValueError, OverflowError, OSError) as exc:
        raise DecodeError(f"Invalid timestamp: {value!r}") from exc
    raise DecodeError(f"Invalid timestamp: {value!r}")


def decode_jws_payload(signed_data: str) -> dict[str, Any]:
    """
    Decode the payload segment of an Apple JWS without verifying its signature.

    The data comes straight from Apple's API over HTTPS; the certificate chain
    in the header is not checked here.
    """
    if not isinstance(signed_data, str) or signed_data.count(".") != 2:
        raise DecodeError("Invalid JWS format")
    try:
        payload: dict[str, Any] = jwt.decode(signed_data, options={"verify_signature": False})
    except jwt.exceptions.PyJWTError as exc:
        raise DecodeError(f"Invalid JWS data: {exc}") from exc
    return payload


def parse_transaction_info(data: dict[str, Any]) -> AppleTransactionInfo:
    """Parse transaction info from a decoded JWS payload."""
    transaction_id = data.get("transactionId")
    product_id = data.get("productId")
    if not transaction_id or not product_id:
        raise DecodeError(
            "Apple transaction payload missing transactionId or productId",
            details={"keys": sorted(data)},
        )
    original = data.get("originalTransactionId")
    return AppleTransactionInfo(
        transaction_id=str(transaction_id),
        original_transaction_id=str(original) if original else None,
        product_id=str(product_id),
        purchase_date=normalize_timestamp(data.get("purchaseDate")),
        expires_date=normalize_timestamp(data.get("expiresDate")),
        bundle_id=data.get("bundleId"),
        environment=data.get("environment"),
        type=data.get("type"),
        revocation_date=normalize_timestamp(data.get("revocationDate")),
    )


def parse_renewal_info(data: dict[str, Any]) -> AppleRenewalInfo:
    """Parse renewal info from a decoded JWS payload."""
    status = data.get("autoRenewStatus")
    auto_renew_status = None
    if status is not None:
        if isinstance(status, bool):
            raise DecodeError("Invalid autoRenewStatus", details={"autoRenewStatus": status})
        try:
            auto_renew_status = int(status)
        except (TypeError, ValueError) as e:
            raise DecodeError(
                "Invalid autoRenewStatus", details={"autoRenewStatus": status}
            ) from e
    return AppleRenewalInfo(
        original_transaction_id=data.get("originalTransactionId"),
        product_id=data.get("productId") or data.get("autoRenewProductId"),
        auto_renew_status=auto_renew_status,
    )


def _normalize_private_key(private_key: str) -> str:
    """Accept PEM with real or escaped newlines, or base64-encoded PEM."""
    key = private_key.replace("\r", "").replace("\\n", "\n").strip()
    if "BEGIN" in key:
        return key
    try:
        decoded = base64.b64decode(key, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return key
    return decoded if "BEGIN" in decoded else key


def _parse_body(response: httpx.Response) -> dict[str, Any]:
    text = response.text
    if not text:
        return {}
    try:
        parsed = response.json()
    except ValueError:
        return {"raw": text}
    return parsed if isinstance(parsed, dict) else {"raw": parsed}


class AppleStoreKitVerifier:
    """
    Apple App Store Server API verifier.

    A fresh signed token is produced for every call and never stored.
    """

    provider = APPLE_PROVIDER

    def __init__(
        self,
        config: AppleStoreKitConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Apple StoreKit verifier.

        Args:
            config: StoreKit configuration with API credentials
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.config = config
        self._private_key = _normalize_private_key(config.private_key)
        self._transport = transport

        logger.info(
            "apple_storekit_verifier_initialized",
            bundle_id=config.bundle_id,
            environment=config.environment,
        )

    def generate_token(self) -> str:
        """Generate a short-lived ES256 token for App Store Server API authentication."""
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self.config.issuer_id,
            "iat": now - CLOCK_SKEW_SECONDS,
            "exp": now + self.config.token_ttl_seconds,
            "aud": APPLE_AUDIENCE,
        }
        if self.config.bundle_id:
            payload["bid"] = self.config.bundle_id

        return jwt.encode(
            payload,
            self._private_key,
            algorithm="ES256",
            headers={"kid": self.config.key_id, "typ": "JWT"},
        )

    async def _get(self, endpoint: str, operation: str) -> dict[str, Any]:
        """Make an authenticated GET request to App Store Server API."""
        url = f"{self.config.api_base_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.generate_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.config.request_timeout_seconds,
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("apple_storekit_request_failed", operation=operation, error=str(exc))
            raise ProviderError(f"Apple API unreachable: {exc}", status_code=502) from exc
        finally:
            metrics.record_provider_call(self.provider, operation, time.perf_counter() - started)

        body = _parse_body(response)
        if not response.is_success:
            message = (
                body.get("errorMessage")
                or body.get("message")
                or body.get("error")
                or f"Apple API error ({response.status_code})"
            )
            logger.error(
                "apple_storekit_api_error",
                operation=operation,
                status=response.status_code,
                error=body,
            )
            raise ProviderError(str(message), status_code=response.status_code, details=body)
        return body

    async def verify(self, transaction_ref: str) -> PurchaseRecord:
        """
        Look up a transaction and return the normalized purchase.

        Raises:
            ProviderError: If lookup fails
            DecodeError: If the signed payload is malformed
        """
        logger.info("getting_apple_transaction_info", transaction_id=transaction_ref)

        body = await self._get(
            f"/inApps/v1/transactions/{quote(transaction_ref, safe='')}",
            "transaction_lookup",
        )
        signed_data = body.get("signedTransactionInfo")
        if not signed_data:
            raise DecodeError("Apple response missing signedTransactionInfo", details=body)

        payload = decode_jws_payload(signed_data)
        transaction = parse_transaction_info(payload)

        logger.info(
            "apple_transaction_info_retrieved",
            transaction_id=transaction.transaction_id,
            product_id=transaction.product_id,
            environment=transaction.environment,
        )

        return transaction.to_purchase_record(
            raw={"apple": body, "signedTransactionInfo": signed_data, "decoded": payload}
        )

    async def get_subscription_statuses(
        self, original_transaction_id: str
    ) -> list[RenewalCandidate]:
        """
        Get the latest transaction and renewal info for each subscription in a chain.

        Raises:
            ProviderError: If the status call fails
            DecodeError: If any signed payload is malformed
        """
        logger.info(
            "getting_apple_subscription_statuses",
            original_transaction_id=original_transaction_id,
        )

        body = await self._get(
            f"/inApps/v1/subscriptions/{quote(original_transaction_id, safe='')}",
            "subscription_status",
        )

        candidates: list[RenewalCandidate] = []
        for group in body.get("data") or []:
            for item in group.get("lastTransactions") or []:
                signed_transaction = item.get("signedTransactionInfo")
                if not signed_transaction:
                    continue
                decoded = decode_jws_payload(signed_transaction)
                transaction = parse_transaction_info(decoded)

                renewal: AppleRenewalInfo | None = None
                signed_renewal = item.get("signedRenewalInfo")
                if signed_renewal:
                    renewal = parse_renewal_info(decode_jws_payload(signed_renewal))

                candidates.append(
                    RenewalCandidate(
                        purchase=transaction.to_purchase_record(
                            raw={"status": item.get("status"), "decoded": decoded}
                        ),
                        auto_renew=renewal.will_renew() if renewal else None,
                    )
                )

        logger.info(
            "apple_subscription_statuses_retrieved",
            original_transaction_id=original_transaction_id,
            count=len(candidates),
        )
        return candidates
