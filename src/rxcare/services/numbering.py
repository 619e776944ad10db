"""
Intervention Numbering

Per-workplace identifiers of the form CI-YYYYMM-NNNN, where YYYYMM is the
month of generation and NNNN restarts at 0001 each month.

Allocation is serialised per tenant with an asyncio.Lock inside one
process. Across processes the store's unique (tenant, number) index
rejects a collision and the caller retries with a fresh number.
"""

from datetime import datetime
from typing import Awaitable, Callable, TypeVar
import asyncio
import re

import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_random

from rxcare.db.store import InterventionStore
from rxcare.errors import BusinessRuleError, DuplicateKeyError, InternalError, StoreUnavailableError
from rxcare.models.base import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_SEQUENCE = re.compile(r"^CI-\d{6}-(\d{4})$")


def number_prefix(now: datetime) -> str:
    return f"CI-{now.year:04d}{now.month:02d}-"


def format_number(prefix: str, sequence: int) -> str:
    return f"{prefix}{sequence:04d}"


class NumberingService:
    """
    Allocates intervention numbers.

    Usage:
        numbering = NumberingService(store)
        saved = await numbering.allocate_and_insert(tenant_id, build_and_insert)
    """

    def __init__(self, store: InterventionStore, max_attempts: int = 5):
        self.store = store
        self.max_attempts = max_attempts
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    async def generate_next(self, tenant_id: str, now: datetime | None = None) -> str:
        """
        Next number after the highest existing one for this tenant and month.

        Raises:
            InternalError: The store is unreachable
        """
        prefix = number_prefix(now or utcnow())
        try:
            highest = await self.store.max_number_with_prefix(tenant_id, prefix)
        except StoreUnavailableError as e:
            logger.error("Numbering store unavailable", tenant_id=tenant_id, error=str(e))
            raise InternalError() from e

        sequence = 1
        if highest:
            match = _SEQUENCE.match(highest)
            if match:
                sequence = int(match.group(1)) + 1
        if sequence > 9999:
            raise BusinessRuleError(
                "Intervention number sequence exhausted for this month",
                details={"prefix": prefix},
            )
        return format_number(prefix, sequence)

    async def allocate_and_insert(
        self,
        tenant_id: str,
        insert: Callable[[str], Awaitable[T]],
        now: datetime | None = None,
    ) -> T:
        """
        Generate a number and run insert(number), retrying on collision.

        insert must raise DuplicateKeyError when the number is taken.

        Raises:
            BusinessRuleError: Collisions persisted past the retry budget
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_random(0, 0.05),
                retry=retry_if_exception_type(DuplicateKeyError),
            ):
                with attempt:
                    async with self._lock_for(tenant_id):
                        number = await self.generate_next(tenant_id, now)
                        if attempt.retry_state.attempt_number > 1:
                            logger.warning(
                                "Retrying intervention number allocation",
                                tenant_id=tenant_id,
                                attempt=attempt.retry_state.attempt_number,
                                number=number,
                            )
                        return await insert(number)
        except RetryError as e:
            logger.error("Intervention number allocation exhausted", tenant_id=tenant_id)
            raise BusinessRuleError(
                "Could not allocate a unique intervention number",
                details={"attempts": self.max_attempts},
            ) from e
