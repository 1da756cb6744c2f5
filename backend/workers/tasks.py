import logging

from celery import shared_task

from billing.errors import WorkerAlreadyRunning

from .models import WorkerExecution
from .services import claim_worker, run_worker

logger = logging.getLogger(__name__)


@shared_task
def run_scheduled_worker(worker_name: str) -> int | None:
    try:
        execution = claim_worker(worker_name, trigger=WorkerExecution.Trigger.SCHEDULED)
    except WorkerAlreadyRunning:
        logger.info("Skipping scheduled %s run; previous run still in progress", worker_name)
        return None
    return run_worker(execution).id


@shared_task
def run_claimed_worker(execution_id: int) -> int | None:
    execution = WorkerExecution.objects.filter(
        id=execution_id, status=WorkerExecution.Status.RUNNING
    ).first()
    if execution is None:
        return None
    return run_worker(execution).id
