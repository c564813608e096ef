"""Transaction runner with retry on transient database failures.

Every balance, quota, coupon or subscription change runs inside one call:

    entry = await run_in_transaction(
        lambda db: CreditLedger(db).add_credit(account_id, 5000, "Top up"),
        session_factory=session_factory,
    )

The work callable receives a fresh session, may flush as often as it likes
and must not commit. The runner commits on success and rolls back on any
error. Lock timeouts, serialization failures, deadlocks and dropped
connections are retried with jittered backoff; domain errors never are.
"""
import asyncio
import random
from typing import Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.config import settings
from billing_core.database import AsyncSessionLocal
from billing_core.exceptions import BillingError, RetryableTransactionError
from billing_core.metrics import transaction_retries_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}

SQLITE_BUSY_MESSAGES = ("database is locked", "database table is locked", "database is busy")


def is_transient_error(exc: BaseException) -> bool:
    """
    Whether a database error is worth retrying in a new transaction.

    Args:
        exc: Exception raised while running or committing a unit of work

    Returns:
        True for lock timeouts, serialization failures, deadlocks and
        invalidated connections
    """
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True

    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in TRANSIENT_SQLSTATES:
        return True

    if isinstance(exc, OperationalError):
        message = str(orig).lower()
        return any(fragment in message for fragment in SQLITE_BUSY_MESSAGES)
    return False


async def run_in_transaction(
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    attempts: int | None = None,
    operation: str | None = None,
) -> T:
    """
    Run work in its own transaction and commit it.

    Args:
        work: Coroutine function taking the session
        session_factory: Factory for new sessions (defaults to the app's)
        attempts: Total attempts for transient failures
        operation: Name used in log events

    Returns:
        Whatever work returned

    Raises:
        BillingError: Domain errors from work, after rollback
        RetryableTransactionError: Transient failures on every attempt
    """
    session_factory = session_factory or AsyncSessionLocal
    max_attempts = attempts or settings.uow_max_attempts
    operation = operation or getattr(work, "__name__", "unit_of_work")

    for attempt in range(1, max_attempts + 1):
        async with session_factory() as session:
            try:
                result = await work(session)
                await session.commit()
                return result
            except BillingError:
                await session.rollback()
                raise
            except DBAPIError as exc:
                await session.rollback()
                if not is_transient_error(exc):
                    raise
                if attempt == max_attempts:
                    logger.error(
                        "transaction_retries_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(exc.orig),
                    )
                    raise RetryableTransactionError(attempt, str(exc.orig)) from exc

                transaction_retries_total.labels(operation=operation).inc()
                delay = random.randint(settings.uow_backoff_min_ms, settings.uow_backoff_max_ms) / 1000
                logger.warning(
                    "transaction_retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(exc.orig),
                )
            except Exception:
                await session.rollback()
                raise

        await asyncio.sleep(delay)

    # Only reachable with max_attempts < 1
    raise RetryableTransactionError(max_attempts, "no attempts made")
