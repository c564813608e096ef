"""Client for the instance provisioning API."""
from typing import Optional
from uuid import UUID

import httpx
import structlog

from billing_core.config import settings
from billing_core.exceptions import ExternalDependencyUnavailableError

logger = structlog.get_logger(__name__)


class ProvisioningClient:
    """
    Asks the provisioning layer to stop the instances of a subscription.

    Without a configured base URL the request is only logged.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url if base_url is not None else settings.provisioning_api_url
        self.timeout = timeout or settings.external_request_timeout_seconds
        self.transport = transport

    async def terminate_instances(self, subscription_id: UUID, reason: str = "subscription_expired") -> dict:
        """
        Terminate every instance belonging to a subscription.

        Args:
            subscription_id: Subscription whose instances must stop
            reason: Why the instances are being stopped

        Returns:
            Dictionary with the termination status

        Raises:
            ExternalDependencyUnavailableError: If the API cannot be reached
                or rejects the request
        """
        if not self.base_url:
            logger.info("instances_termination_logged", subscription_id=str(subscription_id), reason=reason)
            return {"status": "logged", "subscription_id": str(subscription_id)}

        url = f"{self.base_url.rstrip('/')}/subscriptions/{subscription_id}/terminate"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json={"reason": reason})
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ExternalDependencyUnavailableError(
                "provisioning",
                f"Provisioning API timed out after {self.timeout}s",
                {"subscription_id": str(subscription_id)},
            ) from e
        except httpx.HTTPError as e:
            raise ExternalDependencyUnavailableError(
                "provisioning",
                f"Provisioning API failed: {e}",
                {"subscription_id": str(subscription_id)},
            ) from e

        payload = response.json() if response.content else {}
        logger.info(
            "instances_terminated",
            subscription_id=str(subscription_id),
            terminated=payload.get("terminated"),
        )
        return {"status": "terminated", "subscription_id": str(subscription_id), **payload}
