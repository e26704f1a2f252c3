"""Post-completion signal sent when a whole tool batch succeeds.

The coordinator never deploys anything itself; it only tells a trigger that
the batch for an execution finished without errors.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class DeploymentTrigger:
    async def notify_batch_success(self, execution_id: str) -> None:
        raise NotImplementedError


class WebhookDeploymentTrigger(DeploymentTrigger):
    """POSTs ``{"execution_id", "record_id"}`` to a deploy endpoint.

    Args:
        url: Endpoint to notify.
        record_id: Record (chat message) the executions belong to.
        token: Optional bearer token.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        record_id: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.record_id = record_id
        self.token = token
        self.timeout = timeout

    async def notify_batch_success(self, execution_id: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.url,
                json={"execution_id": execution_id, "record_id": self.record_id},
                headers=headers,
                timeout=self.timeout,
            )
        response.raise_for_status()
        logger.info(f"Notified {self.url} of successful batch {execution_id}")
