"""Map a job Outcome onto Celery's retry mechanics."""

from __future__ import annotations

import structlog
from celery import Task

from deid_export.exceptions import ExportError
from deid_export.services.outcome import Outcome, OutcomeKind

logger = structlog.get_logger()


def settle(task: Task, outcome: Outcome, *, countdown: int, **context) -> dict:
    """Finish a task run according to the handler's outcome.

    A retryable outcome re-queues the message while the task's retry budget
    lasts; everything else ends the run with the outcome as its result.
    """
    if outcome.kind is OutcomeKind.RETRYABLE:
        if task.request.retries < task.max_retries:
            logger.warning(
                "export_retry_scheduled",
                task=task.name,
                retry=task.request.retries + 1,
                countdown=countdown,
                **context,
            )
            raise task.retry(countdown=countdown, exc=ExportError(outcome.detail))
        logger.error("export_retries_exhausted", task=task.name, **context)
    elif outcome.kind is OutcomeKind.FATAL:
        logger.error("export_failed_permanently", task=task.name, detail=outcome.detail, **context)
    return outcome.as_dict()
