"""Operator-facing event delivery.

Migration progress and outcomes are pushed to a :class:`NotificationSink`.
Delivery problems are logged and never change an operation's result.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import httpx

from vmhost.config import settings

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    MIGRATION_STARTED = "migration_started"
    MIGRATION_PROGRESS = "migration_progress"
    MIGRATION_FINISHED = "migration_finished"
    MIGRATION_FAILED = "migration_failed"
    MIGRATION_CANCELLED = "migration_cancelled"


# Kinds that close a migration attempt
OUTCOME_KINDS = frozenset({
    EventKind.MIGRATION_FINISHED,
    EventKind.MIGRATION_FAILED,
    EventKind.MIGRATION_CANCELLED,
})


@dataclass
class OperatorEvent:
    kind: EventKind
    workload: str
    message: str = ""
    percent: float | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self, agent_id: str = "") -> dict:
        return {
            "agent_id": agent_id,
            "event_type": self.kind.value,
            "workload": self.workload,
            "message": self.message,
            "percent": self.percent,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationSink(ABC):
    @abstractmethod
    async def notify(self, event: OperatorEvent) -> None:
        """Deliver one event."""


class LoggingSink(NotificationSink):
    """Writes events to the agent log only."""

    async def notify(self, event: OperatorEvent) -> None:
        if event.percent is not None:
            logger.info(f"[{event.workload}] {event.kind.value} {event.percent:.1f}%")
        else:
            logger.info(f"[{event.workload}] {event.kind.value} {event.message}".rstrip())


class ControllerSink(NotificationSink):
    """POSTs events to the controller's ``/events/vm`` endpoint."""

    def __init__(
        self,
        agent_id: str,
        controller_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.agent_id = agent_id
        self.controller_url = (controller_url or settings.controller_url).rstrip("/")
        self.timeout = settings.notify_timeout if timeout is None else timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> None:
        response = await client.post(
            f"{self.controller_url}/events/vm",
            json=payload,
            timeout=self.timeout,
        )
        if response.status_code != 200:
            logger.warning(
                f"Controller rejected {payload['event_type']} event for "
                f"{payload['workload']}: {response.status_code}"
            )

    async def notify(self, event: OperatorEvent) -> None:
        payload = event.to_payload(self.agent_id)
        try:
            if self._client is not None:
                await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient() as client:
                    await self._post(client, payload)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to deliver {event.kind.value} event for {event.workload}: {e}")
