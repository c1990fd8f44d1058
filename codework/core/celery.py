import logging
from typing import Optional

from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure, worker_init

from codework.core.config import settings
from codework.core.logging_config import setup_logging
from codework.core.metrics import start_worker_metrics_server

# Ensure structured JSON logging for the worker process
setup_logging()

logger = logging.getLogger(__name__)

TASK_TIME_LIMIT_SECONDS = int(settings.RUNNER_MAX_TIMEOUT_SECONDS) + 120

celery_app = Celery(
    "codework",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Hard stop past the longest runner call the orchestrator will make
    task_time_limit=TASK_TIME_LIMIT_SECONDS,
    task_acks_late=True,
    # A killed worker must not re-queue the job: evaluations are never retried
    task_reject_on_worker_lost=False,
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.EVALUATION_WORKER_CONCURRENCY,
    broker_connection_retry_on_startup=True,
    result_expires=3600,
    task_routes={
        "codework.evaluate_submission": {"queue": settings.EVALUATION_QUEUE},
    },
)


@worker_init.connect
def _setup_worker_observability(**kwargs):
    logger.info("Setting up observability for Celery worker")
    start_worker_metrics_server()


# ---- Celery task lifecycle structured logs ----

def _job_context(args, kwargs) -> dict:
    job = None
    if isinstance(args, (list, tuple)) and len(args) > 0 and isinstance(args[0], dict):
        job = args[0]
    if isinstance(kwargs, dict) and isinstance(kwargs.get("job"), dict):
        job = kwargs["job"]
    job = job or {}
    return {
        "submission_id": job.get("submission_id"),
        "language": job.get("language"),
        "user_id": job.get("caller_id"),
    }


@task_prerun.connect
def _on_task_start(task_id=None, task=None, args=None, kwargs=None, **extra_kwargs):
    logging.getLogger("celery.task").info(
        "task_started",
        extra={"task_name": getattr(task, "name", None), "task_id": task_id, **_job_context(args, kwargs)},
    )


@task_postrun.connect
def _on_task_end(task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **extra_kwargs):
    # Fires after failures too; task_failure has already logged those
    logging.getLogger("celery.task").info(
        "task_succeeded" if state == "SUCCESS" else f"task_finished: {state}",
        extra={
            "task_name": getattr(task, "name", None),
            "task_id": task_id,
            "overall_status": retval.get("overallStatus") if isinstance(retval, dict) else None,
            **_job_context(args, kwargs),
        },
    )


@task_failure.connect
def _on_task_failure(task_id=None, exception=None, args=None, kwargs=None, sender=None, **extra_kwargs):
    logging.getLogger("celery.task").error(
        f"task_failed: {str(exception)}",
        extra={"task_name": getattr(sender, "name", None), "task_id": task_id, **_job_context(args, kwargs)},
    )


# One orchestrator per worker process; it owns that process's in-flight map
_orchestrator = None


def get_worker_orchestrator():
    global _orchestrator
    if _orchestrator is None:
        from codework.db.session import SessionLocal
        from codework.services.evaluation import EvaluationOrchestrator

        _orchestrator = EvaluationOrchestrator(session_factory=SessionLocal)
    return _orchestrator


@celery_app.task(name="codework.evaluate_submission")
def evaluate_submission_task(job: dict) -> dict:
    """Run one evaluation. Not retried: failures are reported through the summary."""
    from codework.services.evaluation import EvaluationJob

    summary = get_worker_orchestrator().run(EvaluationJob.from_dict(job))
    return summary.to_wire()


class CeleryEvaluationQueue:
    """Hands evaluation jobs to Celery workers."""

    def __init__(self, queue: Optional[str] = None):
        self.queue = queue or settings.EVALUATION_QUEUE

    def submit(self, job) -> Optional[str]:
        result = evaluate_submission_task.apply_async(args=[job.to_dict()], queue=self.queue)
        return result.id
