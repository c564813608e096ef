"""Tests for the transaction runner and its retry policy."""
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from billing_core import unit_of_work
from billing_core.exceptions import InsufficientCreditError, RetryableTransactionError
from billing_core.models import Account
from billing_core.unit_of_work import is_transient_error, run_in_transaction


class _PgError(Exception):
    def __init__(self, sqlstate: str):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


def _locked() -> OperationalError:
    return OperationalError("UPDATE accounts SET ...", {}, Exception("database is locked"))


@pytest.fixture(autouse=True)
def fast_backoff(monkeypatch) -> None:
    monkeypatch.setattr(unit_of_work.settings, "uow_backoff_min_ms", 1)
    monkeypatch.setattr(unit_of_work.settings, "uow_backoff_max_ms", 2)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (_locked(), True),
        (DBAPIError("SELECT 1", {}, _PgError("40001")), True),
        (DBAPIError("SELECT 1", {}, _PgError("40P01")), True),
        (DBAPIError("SELECT 1", {}, _PgError("55P03")), True),
        (DBAPIError("SELECT 1", {}, Exception("server closed"), connection_invalidated=True), True),
        (IntegrityError("INSERT ...", {}, _PgError("23505")), False),
        (OperationalError("SELECT 1", {}, Exception("no such table: accounts")), False),
        (ValueError("not a database error"), False),
    ],
)
def test_is_transient_error(exc, expected) -> None:
    assert is_transient_error(exc) is expected


@pytest.mark.asyncio
async def test_transient_error_is_retried(session_factory) -> None:
    calls = []

    async def work(db):
        calls.append(1)
        if len(calls) == 1:
            raise _locked()
        return "done"

    assert await run_in_transaction(work, session_factory=session_factory) == "done"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded(session_factory) -> None:
    calls = []

    async def work(db):
        calls.append(1)
        raise _locked()

    with pytest.raises(RetryableTransactionError) as exc_info:
        await run_in_transaction(work, session_factory=session_factory, attempts=3)

    assert len(calls) == 3
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.__cause__, OperationalError)


@pytest.mark.asyncio
async def test_domain_errors_are_not_retried(session_factory) -> None:
    calls = []

    async def work(db):
        calls.append(1)
        raise InsufficientCreditError(required=50000, available=40000)

    with pytest.raises(InsufficientCreditError):
        await run_in_transaction(work, session_factory=session_factory)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_failed_work_is_rolled_back(session_factory) -> None:
    async def work(db):
        db.add(Account(email="rollback@example.com", name="Rollback"))
        await db.flush()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await run_in_transaction(work, session_factory=session_factory)

    async with session_factory() as db:
        count = await db.execute(select(func.count(Account.id)))
        assert count.scalar_one() == 0
