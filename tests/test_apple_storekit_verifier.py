"""
Tests for the Apple App Store Server API verifier.

HTTP is served by httpx.MockTransport; signed payloads are built with PyJWT.
"""

import time
from datetime import UTC, datetime

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from app.exceptions import DecodeError, ProviderError
from app.models.apple_storekit import AppleStoreKitConfig
from app.services.apple_storekit_provider import (
    APPLE_AUDIENCE,
    AppleStoreKitVerifier,
    decode_jws_payload,
    normalize_timestamp,
    parse_renewal_info,
)

JWS_SIGNING_KEY = "apple-jws-test-signing-key-with-32+-bytes"

PURCHASE_MS = 1704067200000  # 2024-01-01T00:00:00Z
EXPIRES_MS = 1706745600000  # 2024-02-01T00:00:00Z


def sign(payload: dict) -> str:
    """Build a three-segment JWS the way Apple returns them (signature not checked)."""
    return jwt.encode(payload, JWS_SIGNING_KEY, algorithm="HS256")


def transaction_payload(**overrides) -> dict:
    payload = {
        "transactionId": "2000000111",
        "originalTransactionId": "2000000100",
        "productId": "com.app.premium.monthly",
        "bundleId": "com.app",
        "purchaseDate": PURCHASE_MS,
        "expiresDate": EXPIRES_MS,
        "environment": "Production",
        "type": "Auto-Renewable Subscription",
    }
    payload.update(overrides)
    return payload


@pytest.fixture(scope="module")
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="module")
def private_pem(ec_key: ec.EllipticCurvePrivateKey) -> str:
    return ec_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


@pytest.fixture(scope="module")
def public_pem(ec_key: ec.EllipticCurvePrivateKey) -> bytes:
    return ec_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


@pytest.fixture
def config(private_pem: str) -> AppleStoreKitConfig:
    return AppleStoreKitConfig(
        key_id="KEY123ABC",
        issuer_id="57246542-96fe-1a63-e053-0824d011072a",
        private_key=private_pem,
        environment="production",
        bundle_id="com.app",
    )


class RecordingHandler:
    """MockTransport handler returning one canned response and recording requests."""

    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def make_verifier(
    config: AppleStoreKitConfig, response: httpx.Response | Exception
) -> tuple[AppleStoreKitVerifier, RecordingHandler]:
    handler = RecordingHandler(response)
    return AppleStoreKitVerifier(config, transport=httpx.MockTransport(handler)), handler


# ============================================================================
# Token generation
# ============================================================================


class TestTokenGeneration:
    """ES256 request token claims."""

    def test_claims_and_header(self, config: AppleStoreKitConfig, public_pem: bytes):
        verifier = AppleStoreKitVerifier(config)
        before = int(time.time())
        token = verifier.generate_token()

        header = jwt.get_unverified_header(token)
        assert header["alg"] == "ES256"
        assert header["kid"] == "KEY123ABC"

        claims = jwt.decode(token, public_pem, algorithms=["ES256"], audience=APPLE_AUDIENCE)
        assert claims["iss"] == config.issuer_id
        assert claims["bid"] == "com.app"
        assert claims["iat"] <= before
        assert 300 <= claims["exp"] - claims["iat"] <= 600 + 10

    def test_ttl_follows_config(self, private_pem: str):
        config = AppleStoreKitConfig(
            key_id="KEY123ABC",
            issuer_id="issuer",
            private_key=private_pem,
            token_ttl_seconds=600,
        )
        claims = jwt.decode(
            AppleStoreKitVerifier(config).generate_token(),
            options={"verify_signature": False},
        )
        assert claims["exp"] - claims["iat"] == 600 + 10
        assert "bid" not in claims

    def test_escaped_newlines_in_key(self, private_pem: str, public_pem: bytes):
        escaped = private_pem.replace("\n", "\\n")
        config = AppleStoreKitConfig(key_id="K", issuer_id="I", private_key=escaped)
        token = AppleStoreKitVerifier(config).generate_token()
        jwt.decode(token, public_pem, algorithms=["ES256"], audience=APPLE_AUDIENCE)


# ============================================================================
# Transaction lookup
# ============================================================================


class TestVerify:
    """GET /inApps/v1/transactions/{id}."""

    async def test_returns_normalized_purchase(self, config: AppleStoreKitConfig):
        body = {"signedTransactionInfo": sign(transaction_payload())}
        verifier, handler = make_verifier(config, httpx.Response(200, json=body))

        purchase = await verifier.verify("2000000111")

        assert purchase.provider == "apple"
        assert purchase.provider_tx_id == "2000000111"
        assert purchase.original_tx_id == "2000000100"
        assert purchase.store_product_id == "com.app.premium.monthly"
        assert purchase.purchased_at == datetime(2024, 1, 1, tzinfo=UTC)
        assert purchase.expires_at == datetime(2024, 2, 1, tzinfo=UTC)
        assert purchase.raw["decoded"]["bundleId"] == "com.app"

        request = handler.requests[0]
        assert request.method == "GET"
        assert str(request.url) == (
            "https://api.storekit.itunes.apple.com/inApps/v1/transactions/2000000111"
        )
        assert request.headers["Authorization"].startswith("Bearer ")

    async def test_new_token_on_every_call(self, config: AppleStoreKitConfig):
        body = {"signedTransactionInfo": sign(transaction_payload())}
        verifier, handler = make_verifier(config, httpx.Response(200, json=body))

        await verifier.verify("2000000111")
        await verifier.verify("2000000111")

        assert len(handler.requests) == 2
        for request in handler.requests:
            token = request.headers["Authorization"].removeprefix("Bearer ")
            assert jwt.get_unverified_header(token)["kid"] == "KEY123ABC"

    async def test_sandbox_host(self, private_pem: str):
        config = AppleStoreKitConfig(
            key_id="K", issuer_id="I", private_key=private_pem, environment="sandbox"
        )
        body = {"signedTransactionInfo": sign(transaction_payload())}
        verifier, handler = make_verifier(config, httpx.Response(200, json=body))

        await verifier.verify("2000000111")

        assert handler.requests[0].url.host == "api.storekit-sandbox.itunes.apple.com"

    async def test_string_and_iso_dates(self, config: AppleStoreKitConfig):
        payload = transaction_payload(
            purchaseDate=str(PURCHASE_MS), expiresDate="2024-02-01T00:00:00Z"
        )
        verifier, _ = make_verifier(
            config, httpx.Response(200, json={"signedTransactionInfo": sign(payload)})
        )

        purchase = await verifier.verify("2000000111")

        assert purchase.purchased_at == datetime(2024, 1, 1, tzinfo=UTC)
        assert purchase.expires_at == datetime(2024, 2, 1, tzinfo=UTC)

    async def test_consumable_without_expiry(self, config: AppleStoreKitConfig):
        payload = transaction_payload(productId="com.app.coins.100", type="Consumable")
        del payload["expiresDate"]
        verifier, _ = make_verifier(
            config, httpx.Response(200, json={"signedTransactionInfo": sign(payload)})
        )

        purchase = await verifier.verify("2000000111")

        assert purchase.expires_at is None

    async def test_non_2xx_raises_provider_error_with_store_status(
        self, config: AppleStoreKitConfig
    ):
        body = {"errorCode": 4040010, "errorMessage": "Transaction id not found."}
        verifier, _ = make_verifier(config, httpx.Response(404, json=body))

        with pytest.raises(ProviderError) as exc_info:
            await verifier.verify("missing")

        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "Transaction id not found."
        assert exc_info.value.details == body

    async def test_non_json_error_body(self, config: AppleStoreKitConfig):
        verifier, _ = make_verifier(config, httpx.Response(500, text="upstream down"))

        with pytest.raises(ProviderError) as exc_info:
            await verifier.verify("2000000111")

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Apple API error (500)"
        assert exc_info.value.details == {"raw": "upstream down"}

    async def test_transport_failure_is_502(self, config: AppleStoreKitConfig):
        verifier, _ = make_verifier(config, httpx.ConnectError("connection refused"))

        with pytest.raises(ProviderError) as exc_info:
            await verifier.verify("2000000111")

        assert exc_info.value.status_code == 502

    async def test_missing_signed_payload(self, config: AppleStoreKitConfig):
        verifier, _ = make_verifier(config, httpx.Response(200, json={}))

        with pytest.raises(DecodeError):
            await verifier.verify("2000000111")

    async def test_malformed_signed_payload(self, config: AppleStoreKitConfig):
        verifier, _ = make_verifier(
            config, httpx.Response(200, json={"signedTransactionInfo": "not-a-jws"})
        )

        with pytest.raises(DecodeError):
            await verifier.verify("2000000111")

    async def test_payload_without_product_id(self, config: AppleStoreKitConfig):
        payload = transaction_payload()
        del payload["productId"]
        verifier, _ = make_verifier(
            config, httpx.Response(200, json={"signedTransactionInfo": sign(payload)})
        )

        with pytest.raises(DecodeError):
            await verifier.verify("2000000111")


# ============================================================================
# Subscription status
# ============================================================================


class TestSubscriptionStatuses:
    """GET /inApps/v1/subscriptions/{originalId}."""

    async def test_one_candidate_per_last_transaction(self, config: AppleStoreKitConfig):
        body = {
            "bundleId": "com.app",
            "data": [
                {
                    "subscriptionGroupIdentifier": "21000000",
                    "lastTransactions": [
                        {
                            "originalTransactionId": "2000000100",
                            "status": 1,
                            "signedTransactionInfo": sign(transaction_payload()),
                            "signedRenewalInfo": sign(
                                {"originalTransactionId": "2000000100", "autoRenewStatus": 1}
                            ),
                        },
                        {
                            "originalTransactionId": "2000000100",
                            "status": 2,
                            "signedTransactionInfo": sign(
                                transaction_payload(
                                    transactionId="2000000099",
                                    productId="com.app.premium.yearly",
                                    expiresDate=PURCHASE_MS,
                                )
                            ),
                            "signedRenewalInfo": sign({"autoRenewStatus": 0}),
                        },
                    ],
                }
            ],
        }
        verifier, handler = make_verifier(config, httpx.Response(200, json=body))

        candidates = await verifier.get_subscription_statuses("2000000100")

        assert handler.requests[0].url.path == "/inApps/v1/subscriptions/2000000100"
        assert [c.purchase.provider_tx_id for c in candidates] == ["2000000111", "2000000099"]
        assert [c.auto_renew for c in candidates] == [True, False]
        assert candidates[1].purchase.store_product_id == "com.app.premium.yearly"

    async def test_missing_renewal_info(self, config: AppleStoreKitConfig):
        body = {"data": [{"lastTransactions": [{"signedTransactionInfo": sign(transaction_payload())}]}]}
        verifier, _ = make_verifier(config, httpx.Response(200, json=body))

        candidates = await verifier.get_subscription_statuses("2000000100")

        assert len(candidates) == 1
        assert candidates[0].auto_renew is None

    @pytest.mark.parametrize("auto_renew_status", ["on", [1], True])
    async def test_malformed_auto_renew_status(
        self, config: AppleStoreKitConfig, auto_renew_status
    ):
        body = {
            "data": [
                {
                    "lastTransactions": [
                        {
                            "signedTransactionInfo": sign(transaction_payload()),
                            "signedRenewalInfo": sign({"autoRenewStatus": auto_renew_status}),
                        }
                    ]
                }
            ]
        }
        verifier, _ = make_verifier(config, httpx.Response(200, json=body))

        with pytest.raises(DecodeError) as exc_info:
            await verifier.get_subscription_statuses("2000000100")

        assert exc_info.value.status_code == 502
        assert exc_info.value.details == {"autoRenewStatus": auto_renew_status}

    def test_numeric_string_auto_renew_status(self):
        info = parse_renewal_info({"autoRenewStatus": "1", "autoRenewProductId": "p"})

        assert info.auto_renew_status == 1
        assert info.product_id == "p"

    async def test_empty_data(self, config: AppleStoreKitConfig):
        verifier, _ = make_verifier(config, httpx.Response(200, json={"data": []}))
        assert await verifier.get_subscription_statuses("2000000100") == []

    async def test_store_error(self, config: AppleStoreKitConfig):
        verifier, _ = make_verifier(
            config, httpx.Response(401, json={"message": "Unauthenticated"})
        )

        with pytest.raises(ProviderError) as exc_info:
            await verifier.get_subscription_statuses("2000000100")

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Unauthenticated"


# ============================================================================
# Helpers
# ============================================================================


class TestNormalizeTimestamp:
    @pytest.mark.parametrize(
        "value",
        [PURCHASE_MS, str(PURCHASE_MS), "2024-01-01T00:00:00Z", "2024-01-01T01:00:00+01:00"],
    )
    def test_accepted_forms(self, value):
        assert normalize_timestamp(value) == datetime(2024, 1, 1, tzinfo=UTC)

    def test_naive_iso_is_utc(self):
        assert normalize_timestamp("2024-01-01T00:00:00") == datetime(2024, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing(self, value):
        assert normalize_timestamp(value) is None

    @pytest.mark.parametrize("value", ["yesterday", True, [PURCHASE_MS], "2024-13-45"])
    def test_rejected(self, value):
        with pytest.raises(DecodeError):
            normalize_timestamp(value)


class TestDecodeJwsPayload:
    def test_decodes_middle_segment(self):
        assert decode_jws_payload(sign({"a": 1})) == {"a": 1}

    @pytest.mark.parametrize("value", ["", "a.b", "a.b.c.d", "x.!!!.y"])
    def test_rejects_malformed(self, value):
        with pytest.raises(DecodeError):
            decode_jws_payload(value)
