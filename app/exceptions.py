"""
Exception Classes - Strongly typed exception hierarchy.

Every error carries the HTTP status it maps to and optional diagnostic
details, so the API layer can render it without knowing the concrete type.
"""

from typing import Any


class IAPError(Exception):
    """Base exception for all purchase and entitlement errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any | None = None,
    ) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(IAPError):
    """Raised when required input is missing or unusable."""

    status_code = 400


class UnknownProductError(IAPError):
    """Raised when a store product has no active mapping."""

    status_code = 400

    def __init__(self, platform: str, provider: str, store_product_id: str) -> None:
        self.platform = platform
        self.provider = provider
        self.store_product_id = store_product_id
        super().__init__(
            "Unknown store_product_id (no active mapping)",
            details={
                "platform": platform,
                "provider": provider,
                "storeProductId": store_product_id,
            },
        )


class ProviderError(IAPError):
    """Raised when the store API rejects a call or cannot be reached."""

    status_code = 502


class DecodeError(ProviderError):
    """Raised when a store payload cannot be decoded."""

    status_code = 502


class ProviderNotImplementedError(IAPError):
    """Raised for providers whose verification is not available."""

    status_code = 500

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"{provider.capitalize()} IAP verification not implemented yet.")


class PersistenceError(IAPError):
    """Raised when a durable-store operation fails."""

    status_code = 500

    def __init__(self, operation: str, details: Any | None = None) -> None:
        self.operation = operation
        super().__init__(f"Database error: {operation}", details=details)


class DataIntegrityError(IAPError):
    """Raised when stored reference data violates an invariant."""

    status_code = 500


class NotFoundError(IAPError):
    """Raised when there is nothing to act on for the user."""

    status_code = 404
