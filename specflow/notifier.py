"""Webhook notifications."""

from __future__ import annotations

import logging

import httpx

from .models import Task, WorkflowRun

logger = logging.getLogger(__name__)


class Notifier:
    """Send webhook notifications for run events."""

    def __init__(self, webhook_url: str = "", events: list[str] | None = None):
        self.webhook_url = webhook_url
        self.events = events or []
        self.client = httpx.AsyncClient()

    async def notify(self, event: str, run: WorkflowRun, task: Task | None = None) -> None:
        if not self.webhook_url or event not in self.events:
            return

        payload = {
            "event": event,
            "run_id": run.id,
            "phase": run.phase.value,
        }
        if task is not None:
            payload.update({
                "task_id": task.id,
                "title": task.title,
                "status": task.status.value,
                "reason": task.failure_reason,
            })

        try:
            await self.client.post(self.webhook_url, json=payload, timeout=10)
        except httpx.HTTPError as e:
            # Notification failure does not affect the run
            logger.warning(f"Webhook delivery failed for {event}: {e}")

    async def close(self) -> None:
        await self.client.aclose()
