"""Account creation, registration and deletion."""
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_core.config import settings
from billing_core.database import AsyncSessionLocal
from billing_core.exceptions import AccountNotFoundError, InvalidStateError
from billing_core.metrics import accounts_created_total
from billing_core.models.account import Account
from billing_core.models.subscription import LIVE_SUBSCRIPTION_STATUSES, Subscription
from billing_core.schemas.coupon import WelcomeBonusResult
from billing_core.services.welcome_bonus_service import WelcomeBonusService
from billing_core.unit_of_work import run_in_transaction
from billing_core.utils.dates import utcnow

logger = structlog.get_logger(__name__)


class AccountService:
    """Service for managing credit accounts."""

    def __init__(self, db: AsyncSession):
        """Initialize account service with database session."""
        self.db = db

    async def create_account(self, email: str, name: str) -> Account:
        """
        Create an account with a zero balance.

        Raises:
            InvalidStateError: If the email is already registered
        """
        account = Account(
            email=email.strip().lower(),
            name=name,
            credit_balance=0,
            total_top_up=0,
            total_spent=0,
            ledger_sequence=0,
        )
        self.db.add(account)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise InvalidStateError(f"Account with email {email} already exists", {"email": email}) from exc

        accounts_created_total.inc()
        logger.info("account_created", account_id=str(account.id), email=account.email)
        return account

    async def get_account(self, account_id: UUID) -> Account:
        """
        Get an account that has not been deleted.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        result = await self.db.execute(
            select(Account).where(and_(Account.id == account_id, Account.deleted_at.is_(None)))
        )
        account = result.scalar_one_or_none()
        if not account:
            raise AccountNotFoundError(account_id)
        return account

    async def delete_account(self, account_id: UUID) -> Account:
        """
        Soft-delete an account.

        Raises:
            AccountNotFoundError: If the account does not exist
            InvalidStateError: If the account still has live subscriptions
        """
        account = await self.get_account(account_id)

        result = await self.db.execute(
            select(func.count(Subscription.id)).where(
                and_(
                    Subscription.account_id == account_id,
                    Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
                )
            )
        )
        live = result.scalar_one()
        if live:
            raise InvalidStateError(
                f"Account {account_id} has {live} active subscriptions",
                {"account_id": str(account_id), "active_subscriptions": live},
            )

        account.deleted_at = utcnow()
        await self.db.flush()

        logger.info("account_deleted", account_id=str(account_id))
        return account


async def register_account(
    email: str,
    name: str,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> tuple[Account, WelcomeBonusResult]:
    """
    Create an account and grant its welcome bonuses.

    Account creation is committed first; bonus failures are logged and
    returned, they never undo the registration.

    Returns:
        The committed account and the welcome bonus outcome
    """
    session_factory = session_factory or AsyncSessionLocal

    account = await run_in_transaction(
        lambda db: AccountService(db).create_account(email, name),
        session_factory=session_factory,
        operation="create_account",
    )

    bonus = WelcomeBonusResult(account_id=account.id)
    if settings.welcome_bonus_enabled:
        bonus = await WelcomeBonusService(session_factory).apply_welcome_bonuses(account.id)

    return account, bonus
