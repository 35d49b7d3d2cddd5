"""
Unit of work: one atomic transaction per command.

``run(operation)`` executes the operation, commits, and then dispatches the
notifications the operation staged. Version conflicts and connection blips
roll the whole transaction back and re-run the operation with exponential
backoff until the attempt budget or the request deadline runs out.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from leaseledger.core.clock import Deadline
from leaseledger.core.config import settings
from leaseledger.core.errors import TransientFailure
from leaseledger.services.audit import AuditLog
from leaseledger.services.notifications import Notification, Notifier

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (StaleDataError, OperationalError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class UnitOfWork:
    def __init__(
        self,
        db: AsyncSession,
        notifier: Notifier,
        *,
        attempts: int | None = None,
        base_delay: float | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.audit = AuditLog(db)
        self.attempts = attempts or settings.payment_retry_attempts
        self.base_delay = settings.payment_retry_base_delay if base_delay is None else base_delay
        self._pending: list[Notification] = []
        self._after_commit: list[Callable[[], None]] = []
        self._on_rollback: list[Callable[[], None]] = []

    def notify(self, notification: Notification) -> None:
        """Stage a notification; it is sent only if the transaction commits."""
        if notification.recipient_ids:
            self._pending.append(notification)

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the transaction has committed (best-effort)."""
        self._after_commit.append(callback)

    def on_rollback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` if this attempt rolls back, e.g. to drop an uploaded object."""
        self._on_rollback.append(callback)

    async def commit(self) -> None:
        await self.db.commit()
        pending, self._pending = self._pending, []
        self._on_rollback.clear()
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("After-commit callback failed")
        for notification in pending:
            try:
                self.notifier.send(notification)
            except Exception:
                logger.exception("Failed to enqueue notification %s", notification.kind)

    async def rollback(self) -> None:
        self._pending.clear()
        self._after_commit.clear()
        await self.db.rollback()
        callbacks, self._on_rollback = self._on_rollback, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Rollback callback failed")

    async def run(self, operation: Callable[[], Awaitable[T]], deadline: Deadline | None = None) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
                await self.commit()
                return result
            except Exception as exc:
                await self.rollback()
                if not is_transient(exc):
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                out_of_time = deadline is not None and (
                    deadline.expired or (deadline.remaining or 0) < delay
                )
                if attempt >= self.attempts or out_of_time:
                    logger.warning("Giving up after %d attempt(s): %s", attempt, exc)
                    raise TransientFailure(
                        "The record was busy or the database was unavailable; please retry",
                    ) from exc
                logger.info("Transient failure on attempt %d, retrying in %.2fs: %s", attempt, delay, exc)
                await asyncio.sleep(delay)
