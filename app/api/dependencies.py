"""
FastAPI Dependencies - Repository, verifier registry and service wiring.

Tests swap these out through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.repository import IAPRepository, SqlAlchemyIAPRepository
from app.db.session import get_write_db
from app.services.iap import IAPService
from app.services.payment_provider import VerifierRegistry, build_verifier_registry


async def get_repository(db: AsyncSession = Depends(get_write_db)) -> IAPRepository:
    """Repository bound to the request's write session."""
    return SqlAlchemyIAPRepository(db)


@lru_cache(maxsize=1)
def get_verifier_registry() -> VerifierRegistry:
    """Process-wide verifier registry, built once from settings."""
    return build_verifier_registry(settings)


async def get_iap_service(
    repository: IAPRepository = Depends(get_repository),
    registry: VerifierRegistry = Depends(get_verifier_registry),
) -> IAPService:
    return IAPService(repository, registry)
