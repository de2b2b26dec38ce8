"""
Data Deletion - erase a customer on Meta's request.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from structlog import get_logger

from dmtobuy.services.repositories import CustomerDataRepository

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class DeletionReceipt:
    """Confirmation handed back to Meta and shown to the customer."""

    confirmation_code: str
    rows_removed: int


class DataDeletionService:
    """Delete every stored trace of one customer id."""

    def __init__(
        self,
        repository: CustomerDataRepository,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self._clock = clock or _utc_now

    async def delete_customer(self, user_id: str) -> DeletionReceipt:
        if not user_id:
            raise ValueError("user_id cannot be empty")
        removed = await self.repository.delete_sender(user_id)
        stamp = int(self._clock().timestamp() * 1000)
        logger.info("customer_data_deleted", rows_removed=removed)
        return DeletionReceipt(f"DELETED_{user_id}_{stamp}", removed)
