"""Expiry of payment requests the payer never answered."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_ledger.config import get_settings
from mpesa_ledger.core.payment_requests import PaymentRequestStore
from mpesa_ledger.database.connection import get_session_factory
from mpesa_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """
    Moves SENT requests older than the prompt timeout to EXPIRED.

    Never touches the ledger. A callback arriving after expiry finds the
    request terminal and is treated as a duplicate.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[PaymentRequestStore] = None,
        timeout: Optional[timedelta] = None,
    ):
        self._session_factory = session_factory
        self.store = store or PaymentRequestStore()
        self.timeout = timeout or timedelta(seconds=get_settings().stk_push_expiry_seconds)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Expire every stale SENT request in one statement.

        Returns:
            int: Number of requests expired
        """
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            try:
                expired = await self.store.expire_stale(db, self.timeout, now=now)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        metrics.record_expiry_sweep(expired)
        if expired:
            logger.info(
                "payment_requests_expired",
                count=expired,
                timeout_seconds=self.timeout.total_seconds(),
            )
        return expired
