from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from django.utils.module_loading import import_string

from billing.errors import NotFound


@dataclass
class WorkerResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def record(self, ok: bool) -> None:
        self.processed += 1
        if ok:
            self.successful += 1
        else:
            self.failed += 1


@dataclass(frozen=True)
class WorkerDefinition:
    name: str
    display_name: str
    description: str
    schedule_seconds: int
    handler: str

    def load(self):
        return import_string(self.handler)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "schedule_seconds": self.schedule_seconds,
        }


WORKERS: dict[str, WorkerDefinition] = {
    definition.name: definition
    for definition in (
        WorkerDefinition(
            name="subscription_sync",
            display_name="Subscription Sync",
            description="Refreshes mandates and mirrors subscriptions onto the payment provider.",
            schedule_seconds=5 * 60,
            handler="workers.subscription_sync.run",
        ),
        WorkerDefinition(
            name="notification_retry",
            display_name="Notification Retry",
            description="Resends outbox emails that failed to deliver.",
            schedule_seconds=15 * 60,
            handler="workers.notification_retry.run",
        ),
    )
}


def get_worker(name: str) -> WorkerDefinition:
    try:
        return WORKERS[name]
    except KeyError as error:
        raise NotFound("Unknown worker.", worker_name=name) from error
