"""Notification collaborator for billing events."""
from datetime import datetime
from typing import Any, Awaitable, Optional

import httpx
import structlog

from billing_core.config import settings
from billing_core.exceptions import ExternalDependencyUnavailableError
from billing_core.schemas.results import SideEffectResult

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Sends billing notifications to account owners and admins.

    Every notification is logged. When a webhook URL is configured the
    event is also POSTed there for the delivery channels (email, push,
    chat) to pick up.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize notification service.

        Args:
            webhook_url: Endpoint receiving notification events
            timeout: Request timeout in seconds
            transport: Custom httpx transport (used by tests)
        """
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url
        self.timeout = timeout or settings.external_request_timeout_seconds
        self.transport = transport

    async def send(self, event_type: str, to: str, subject: str, data: dict[str, Any]) -> dict:
        """
        Send one notification.

        Args:
            event_type: Machine-readable event name
            to: Recipient email address
            subject: Short human readable title
            data: Event payload

        Returns:
            Dictionary with send status

        Raises:
            ExternalDependencyUnavailableError: If the webhook cannot be reached
        """
        logger.info("billing_notification", event_type=event_type, to=to, subject=subject)

        if not self.webhook_url:
            return {"status": "logged", "event_type": event_type, "to": to}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.webhook_url,
                    json={"type": event_type, "to": to, "subject": subject, "data": data},
                    headers={"User-Agent": "BillingCore-Notifications/1.0"},
                )
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ExternalDependencyUnavailableError(
                "notifications", f"Notification webhook timed out after {self.timeout}s", {"event_type": event_type}
            ) from e
        except httpx.HTTPError as e:
            raise ExternalDependencyUnavailableError(
                "notifications", f"Notification webhook failed: {e}", {"event_type": event_type}
            ) from e

        return {"status": "sent", "event_type": event_type, "to": to, "status_code": response.status_code}

    async def send_low_credit_warning(
        self, to: str, balance: int, required: int, next_billing: datetime, plan_name: str
    ) -> dict:
        """Warn that the balance will not cover the next renewal."""
        return await self.send(
            "low_credit_warning",
            to,
            f"Top up before {next_billing:%Y-%m-%d} to keep {plan_name}",
            {
                "balance": balance,
                "required": required,
                "shortfall": max(0, required - balance),
                "next_billing": next_billing.isoformat(),
                "plan_name": plan_name,
            },
        )

    async def send_grace_period_reminder(
        self, to: str, plan_name: str, amount_due: int, grace_period_end: datetime
    ) -> dict:
        """Remind that a subscription in grace will expire."""
        return await self.send(
            "grace_period_reminder",
            to,
            f"{plan_name} expires on {grace_period_end:%Y-%m-%d} unless you top up",
            {"plan_name": plan_name, "amount_due": amount_due, "grace_period_end": grace_period_end.isoformat()},
        )

    async def send_renewal_success(self, to: str, plan_name: str, amount: int, new_end_date: datetime) -> dict:
        return await self.send(
            "renewal_succeeded",
            to,
            f"{plan_name} renewed",
            {"plan_name": plan_name, "amount": amount, "new_end_date": new_end_date.isoformat()},
        )

    async def send_renewal_failed(
        self, to: str, plan_name: str, amount: int, balance: int, grace_period_end: Optional[datetime]
    ) -> dict:
        return await self.send(
            "renewal_failed",
            to,
            f"{plan_name} could not be renewed",
            {
                "plan_name": plan_name,
                "amount": amount,
                "balance": balance,
                "grace_period_end": grace_period_end.isoformat() if grace_period_end else None,
            },
        )

    async def send_subscription_expired(self, to: str, plan_name: str, reason: str) -> dict:
        return await self.send(
            "subscription_expired",
            to,
            f"{plan_name} has expired",
            {"plan_name": plan_name, "reason": reason},
        )

    async def send_billing_summary(self, summary: dict[str, Any]) -> dict:
        """Daily summary for the admins."""
        return await self.send("billing_summary", "admins", "Daily billing summary", summary)


async def notify_safely(operation: str, notification: Awaitable[dict]) -> SideEffectResult:
    """
    Await a notification without letting it fail the caller.

    Args:
        operation: Name recorded in the result
        notification: Pending send_* call

    Returns:
        SideEffectResult with the send status or the error
    """
    try:
        return SideEffectResult.success(operation, await notification)
    except Exception as e:
        logger.warning("notification_failed", operation=operation, error=str(e))
        return SideEffectResult.failure(operation, e)
