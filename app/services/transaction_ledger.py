"""
Transaction Ledger - At-most-once recognition of store transactions.

The unique constraint on (provider, transaction_id) is the only serialization
point between concurrent requests for the same purchase. No lock is taken:
the loser of an insert race gets ``None`` and continues down the same
idempotent apply path as the winner.
"""

from structlog import get_logger

from app.db.repository import IAPRepository
from app.models.domain import NewTransaction, TransactionData

logger = get_logger(__name__)


class TransactionLedger:
    """Idempotency guard over iap_transactions."""

    def __init__(self, repository: IAPRepository) -> None:
        self.repository = repository

    async def exists(self, provider: str, transaction_id: str) -> TransactionData | None:
        return await self.repository.find_transaction(provider, transaction_id)

    async def insert_if_new(self, transaction: NewTransaction) -> TransactionData | None:
        """
        Record a transaction unless it is already known.

        Returns:
            The inserted row, or None when (provider, transaction_id) already exists

        Raises:
            PersistenceError: On any store failure other than the unique violation
        """
        inserted = await self.repository.insert_transaction(transaction)
        if inserted is None:
            logger.info(
                "transaction_already_recorded",
                provider=transaction.provider,
                transaction_id=transaction.transaction_id,
            )
        return inserted
