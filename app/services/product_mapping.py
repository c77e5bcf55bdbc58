"""
Product Mapper - Store product id to business effect.
"""

from app.db.repository import IAPRepository
from app.exceptions import UnknownProductError
from app.models.domain import ProductMapping


class ProductMapper:
    """Resolve store products through the active rows of iap_product_map."""

    def __init__(self, repository: IAPRepository) -> None:
        self.repository = repository

    async def resolve(self, platform: str, provider: str, store_product_id: str) -> ProductMapping:
        """
        Look up the active mapping for a store product.

        Raises:
            UnknownProductError: If no active mapping exists (never guesses a default)
        """
        mapping = await self.repository.get_active_product_mapping(
            platform, provider, store_product_id
        )
        if mapping is None:
            raise UnknownProductError(platform, provider, store_product_id)
        return mapping
