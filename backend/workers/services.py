from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from billing.errors import WorkerAlreadyRunning

from .models import WorkerExecution, WorkerLock
from .registry import WORKERS, WorkerDefinition, WorkerResult, get_worker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerStatus:
    definition: WorkerDefinition
    is_running: bool
    latest_execution: WorkerExecution | None


def _stale_before():
    return timezone.now() - timedelta(seconds=settings.WORKER_LOCK_STALE_SECONDS)


def _duration_ms(execution: WorkerExecution, finished_at) -> int:
    return max(0, int((finished_at - execution.started_at).total_seconds() * 1000))


def claim_worker(name: str, *, trigger: str, triggered_by=None) -> WorkerExecution:
    """Take the run lock for ``name`` and open a running execution.

    The lock is taken with a single conditional UPDATE, so of two concurrent
    callers exactly one wins; the other gets ``WorkerAlreadyRunning``. A claim
    older than ``WORKER_LOCK_STALE_SECONDS`` may be taken over and its
    execution is closed as failed.
    """
    get_worker(name)
    WorkerLock.objects.get_or_create(worker_name=name)
    now = timezone.now()
    with transaction.atomic():
        previous_execution_id = (
            WorkerLock.objects.filter(worker_name=name).values_list("execution_id", flat=True).first()
        )
        claimed = (
            WorkerLock.objects.filter(worker_name=name)
            .filter(Q(is_running=False) | Q(claimed_at__lt=_stale_before()))
            .update(is_running=True, claimed_at=now, updated_at=now)
        )
        if not claimed:
            raise WorkerAlreadyRunning(f"Worker {name} is already running.", worker_name=name)

        if previous_execution_id is not None:
            abandoned = WorkerExecution.objects.filter(
                id=previous_execution_id, status=WorkerExecution.Status.RUNNING
            ).update(
                status=WorkerExecution.Status.FAILED,
                completed_at=now,
                error_message="Run lock expired before the execution finished.",
            )
            if abandoned:
                logger.warning("Worker %s took over a stale claim from execution %s", name, previous_execution_id)

        execution = WorkerExecution.objects.create(
            worker_name=name,
            trigger=trigger,
            triggered_by=triggered_by,
            status=WorkerExecution.Status.RUNNING,
            started_at=now,
        )
        WorkerLock.objects.filter(worker_name=name).update(execution=execution)
    logger.info("Worker %s claimed (execution %s, %s)", name, execution.id, trigger)
    return execution


def is_worker_running(name: str) -> bool:
    return WorkerLock.objects.filter(
        worker_name=name, is_running=True, claimed_at__gte=_stale_before()
    ).exists()


def _release_lock(execution: WorkerExecution) -> None:
    WorkerLock.objects.filter(worker_name=execution.worker_name, execution=execution).update(
        is_running=False, updated_at=timezone.now()
    )


def complete_execution(execution: WorkerExecution, result: WorkerResult) -> WorkerExecution:
    finished_at = timezone.now()
    with transaction.atomic():
        execution.status = WorkerExecution.Status.COMPLETED
        execution.completed_at = finished_at
        execution.duration_ms = _duration_ms(execution, finished_at)
        execution.items_processed = result.processed
        execution.items_successful = result.successful
        execution.items_failed = result.failed
        execution.metadata = result.metadata
        execution.save(
            update_fields=[
                "status",
                "completed_at",
                "duration_ms",
                "items_processed",
                "items_successful",
                "items_failed",
                "metadata",
            ]
        )
        _release_lock(execution)
    logger.info(
        "Worker %s completed in %sms: %s processed, %s ok, %s failed",
        execution.worker_name,
        execution.duration_ms,
        result.processed,
        result.successful,
        result.failed,
    )
    return execution


def fail_execution(execution: WorkerExecution, error) -> WorkerExecution:
    finished_at = timezone.now()
    with transaction.atomic():
        execution.status = WorkerExecution.Status.FAILED
        execution.completed_at = finished_at
        execution.duration_ms = _duration_ms(execution, finished_at)
        execution.error_message = str(error)[:2000]
        execution.save(update_fields=["status", "completed_at", "duration_ms", "error_message"])
        _release_lock(execution)
    logger.error("Worker %s failed: %s", execution.worker_name, execution.error_message)
    return execution


def run_worker(execution: WorkerExecution) -> WorkerExecution:
    handler = get_worker(execution.worker_name).load()
    try:
        result = handler()
    except Exception as exc:
        logger.exception("Worker %s raised", execution.worker_name)
        return fail_execution(execution, exc)
    return complete_execution(execution, result)


def get_latest_executions() -> list[WorkerStatus]:
    statuses = []
    for name, definition in WORKERS.items():
        statuses.append(
            WorkerStatus(
                definition=definition,
                is_running=is_worker_running(name),
                latest_execution=WorkerExecution.objects.filter(worker_name=name)
                .select_related("triggered_by")
                .first(),
            )
        )
    return statuses


def clamp_history_limit(limit) -> int:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = settings.WORKER_HISTORY_DEFAULT_LIMIT
    return max(1, min(limit, settings.WORKER_HISTORY_MAX_LIMIT))


def get_execution_history(name: str | None = None, limit=None):
    queryset = WorkerExecution.objects.select_related("triggered_by")
    if name is not None:
        get_worker(name)
        queryset = queryset.filter(worker_name=name)
    return list(queryset[: clamp_history_limit(limit)])
