"""Submission evaluation: synchronous trigger checks and the background run.

``EvaluationOrchestrator.trigger`` runs inside the HTTP request. It validates
the request, hands an ``EvaluationJob`` to a queue and returns at once.
``EvaluationOrchestrator.run`` executes on a worker. It calls the remote
runner, scores and redacts the outcome, stores it on the submission and
pushes it to the user who asked for it. ``run`` never raises: every failure
ends as a summary that is stored (when possible) and delivered.
"""
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session

from codework.core.config import settings
from codework.core.metrics import (
    EVALUATION_COMPLETED_TOTAL,
    EVALUATION_DURATION_SECONDS,
    EVALUATION_PERSIST_FAILURES_TOTAL,
    EVALUATION_REJECTED_TOTAL,
    EVALUATION_TRIGGERED_TOTAL,
    EVALUATIONS_IN_FLIGHT,
    RUNNER_FAILURES_TOTAL,
    DurationTimer,
)
from codework.core.runner import RunnerClient, RunnerError, get_runner_client
from codework.models import ELEVATED_ROLES, AssignmentSubmission, ClassroomMember
from codework.schemas.evaluation import (
    EvaluateRequest,
    EvaluateResponse,
    EvaluationStatus,
    EvaluationSummary,
    PipelineStatus,
    TestCaseInfo,
)
from codework.services.ledger import TestCaseLedger, load_ledger, storage_path
from codework.services.notifier import ResultNotifier
from codework.services.scoring import label_and_redact, score_outcomes

logger = logging.getLogger(__name__)

RUNNER_VERSION = "latest"

_FAILURE_STATUS = {
    "rejected": PipelineStatus.RUNNER_REJECTED,
    "timeout": PipelineStatus.RUNNER_TIMEOUT,
    "unreachable": PipelineStatus.RUNNER_UNREACHABLE,
    "unexpected": PipelineStatus.RUNNER_ERROR,
}


# ---- synchronous rejections ----

class EvaluationRejected(Exception):
    reason = "Rejected"
    title = "Evaluation Rejected"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class UnsupportedLanguage(EvaluationRejected):
    reason = "UnsupportedLanguage"
    title = "Unsupported Language"


class SubmissionNotFound(EvaluationRejected):
    reason = "NotFound"
    title = "Submission Not Found"
    status_code = 404


class NotEvaluable(EvaluationRejected):
    reason = "NotEvaluable"
    title = "Not a Code Assignment"


class MissingSolution(EvaluationRejected):
    reason = "MissingSolution"
    title = "Solution File Missing"


class NoTestCases(EvaluationRejected):
    reason = "NoTestCases"
    title = "No Test Cases"


class Forbidden(EvaluationRejected):
    reason = "Forbidden"
    title = "Forbidden"
    status_code = 403


# ---- job handoff ----

@dataclass(frozen=True)
class EvaluationJob:
    submission_id: int
    language: str
    caller_id: str
    requested_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EvaluationJob":
        return cls(
            submission_id=int(data["submission_id"]),
            language=str(data["language"]),
            caller_id=str(data["caller_id"]),
            requested_at=data.get("requested_at") or datetime.utcnow().isoformat(),
        )


@dataclass(frozen=True)
class TriggerAccepted:
    submission_id: int
    language: str
    job_id: Optional[str] = None


class EvaluationQueue(Protocol):
    def submit(self, job: EvaluationJob) -> Optional[str]:
        """Hand the job to a worker; returns a job id when the backend has one."""


class InFlightTracker:
    """Runs currently executing in this orchestrator, keyed by submission id.

    Duplicate runs of one submission are allowed; each keeps its own start time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: dict[int, list[float]] = {}

    def start(self, submission_id: int) -> int:
        with self._lock:
            runs = self._runs.setdefault(submission_id, [])
            runs.append(time.monotonic())
            EVALUATIONS_IN_FLIGHT.inc()
            return len(runs)

    def finish(self, submission_id: int) -> None:
        with self._lock:
            runs = self._runs.get(submission_id)
            if not runs:
                return
            runs.pop(0)
            if not runs:
                del self._runs[submission_id]
            EVALUATIONS_IN_FLIGHT.dec()

    def snapshot(self) -> dict[int, int]:
        with self._lock:
            return {sid: len(runs) for sid, runs in self._runs.items()}


# ---- authorization ----

def _as_user_id(caller_id) -> Optional[int]:
    try:
        return int(caller_id)
    except (TypeError, ValueError):
        return None


def can_access_submission(db: Session, caller_id, submission: AssignmentSubmission) -> bool:
    """Classroom owners and teachers may act on any submission; students only on their own."""
    user_id = _as_user_id(caller_id)
    if user_id is None:
        return False
    role = (
        db.query(ClassroomMember.role)
        .filter(
            ClassroomMember.user_id == user_id,
            ClassroomMember.classroom_id == submission.assignment.classroom_id,
        )
        .scalar()
    )
    if role in ELEVATED_ROLES:
        return True
    return submission.student_id == user_id


class EvaluationOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        runner: Optional[RunnerClient] = None,
        notifier: Optional[ResultNotifier] = None,
        queue: Optional[EvaluationQueue] = None,
        supported_languages: Optional[frozenset] = None,
        runner_timeout: Optional[float] = None,
        timeout_margin: Optional[float] = None,
        max_runner_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.runner = runner
        self.notifier = notifier or ResultNotifier()
        self.queue = queue
        self.supported_languages = supported_languages or settings.supported_languages
        self.runner_timeout = settings.RUNNER_TIMEOUT_SECONDS if runner_timeout is None else runner_timeout
        self.timeout_margin = settings.RUNNER_TIMEOUT_MARGIN_SECONDS if timeout_margin is None else timeout_margin
        self.max_runner_timeout = (
            settings.RUNNER_MAX_TIMEOUT_SECONDS if max_runner_timeout is None else max_runner_timeout
        )
        self.in_flight = InFlightTracker()

    # ---- trigger ----

    def normalize_language(self, language: Optional[str]) -> str:
        normalized = (language or "").strip().lower()
        if normalized not in self.supported_languages:
            raise UnsupportedLanguage(f"The language '{language}' is not supported for evaluation.")
        return normalized

    def check_preconditions(self, db: Session, submission_id: int, language: str, caller_id) -> str:
        """Raise the first failing precondition; return the normalized language."""
        normalized = self.normalize_language(language)

        submission = db.get(AssignmentSubmission, submission_id)
        if submission is None:
            raise SubmissionNotFound(f"Submission with ID {submission_id} not found.")
        if submission.assignment is None or not submission.assignment.is_code_assignment:
            raise NotEvaluable("This assignment is not configured for code evaluation.")
        if submission.solution_file() is None:
            raise MissingSolution("No 'solution' file found in this submission.")
        if not submission.assignment.test_cases:
            raise NoTestCases("No test cases configured for this assignment.")
        if not can_access_submission(db, caller_id, submission):
            raise Forbidden("You are not allowed to evaluate this submission.")
        return normalized

    def trigger(self, db: Session, submission_id: int, language: str, caller_id) -> TriggerAccepted:
        try:
            normalized = self.check_preconditions(db, submission_id, language, caller_id)
        except EvaluationRejected as e:
            EVALUATION_REJECTED_TOTAL.labels(reason=e.reason).inc()
            logger.info(
                f"evaluation_rejected: {e.reason}",
                extra={"submission_id": submission_id, "user_id": str(caller_id), "language": language},
            )
            raise

        if self.queue is None:
            raise RuntimeError("no evaluation queue configured")
        job = EvaluationJob(submission_id=submission_id, language=normalized, caller_id=str(caller_id))
        job_id = self.queue.submit(job)
        EVALUATION_TRIGGERED_TOTAL.labels(language=normalized).inc()
        logger.info(
            "evaluation_queued",
            extra={
                "submission_id": submission_id,
                "user_id": str(caller_id),
                "language": normalized,
                "task_id": job_id,
            },
        )
        return TriggerAccepted(submission_id=submission_id, language=normalized, job_id=job_id)

    # ---- background run ----

    def run(self, job: EvaluationJob) -> EvaluationSummary:
        log_ctx = {"submission_id": job.submission_id, "language": job.language, "user_id": job.caller_id}
        concurrent = self.in_flight.start(job.submission_id)
        if concurrent > 1:
            logger.info("evaluation_already_running_for_submission", extra={**log_ctx, "stage": "start"})
        try:
            with DurationTimer() as timer:
                summary = self._run(job, log_ctx)
            EVALUATION_COMPLETED_TOTAL.labels(overall_status=summary.overall_status).inc()
            EVALUATION_DURATION_SECONDS.labels(language=job.language).observe(timer.seconds)
            return summary
        finally:
            self.in_flight.finish(job.submission_id)

    def _run(self, job: EvaluationJob, log_ctx: dict) -> EvaluationSummary:
        db = None
        submission = None
        try:
            try:
                db = self.session_factory()
                submission = db.get(AssignmentSubmission, job.submission_id)
                ledger = load_ledger(db, submission.assignment_id) if submission is not None else None
                solution = submission.solution_file() if submission is not None else None
                summary = None
                if submission is None or solution is None or not ledger:
                    logger.warning("evaluation_data_changed", extra={**log_ctx, "stage": "load"})
                    summary = self._terminal_summary(job, PipelineStatus.DATA_CHANGED, ledger)
                else:
                    request = self.build_request(job.language, storage_path(solution.file_path, solution.stored_file_name), ledger)
            except Exception as e:
                logger.exception(f"Failed to load submission for evaluation: {str(e)}", extra={**log_ctx, "stage": "load"})
                if db is not None:
                    db.rollback()
                submission = None
                summary = self._terminal_summary(job, EvaluationStatus.INTERNAL_ERROR, None)

            if summary is None:
                summary = self._evaluate(job, request, ledger, log_ctx)

            if submission is not None:
                self._persist(db, submission.id, summary, log_ctx)
        finally:
            if db is not None:
                db.close()

        self._notify(job, summary, log_ctx)
        return summary

    def build_request(self, language: str, code_file_path: str, ledger: TestCaseLedger) -> EvaluateRequest:
        return EvaluateRequest(
            language=language,
            version=RUNNER_VERSION,
            code_file_path=code_file_path,
            test_cases=[
                TestCaseInfo(
                    input_file_path=entry.input_path,
                    expected_output_file_path=entry.expected_output_path,
                    test_case_id=entry.test_case_id,
                    max_execution_time_ms=entry.max_execution_time_ms,
                    max_ram_mb=entry.max_ram_mb,
                )
                for entry in ledger.entries
            ],
        )

    def timeout_for(self, request: EvaluateRequest) -> float:
        wanted = max(self.runner_timeout, request.time_budget_seconds() + self.timeout_margin)
        return min(wanted, self.max_runner_timeout)

    def _evaluate(self, job: EvaluationJob, request: EvaluateRequest, ledger: TestCaseLedger, log_ctx: dict) -> EvaluationSummary:
        timeout = self.timeout_for(request)
        logger.info(
            f"Calling runner for {len(request.test_cases)} test cases (timeout {timeout:.0f}s)",
            extra={**log_ctx, "stage": "runner_call"},
        )
        try:
            runner = self.runner or get_runner_client()
            response = runner.evaluate(request, timeout)
        except RunnerError as e:
            RUNNER_FAILURES_TOTAL.labels(kind=e.kind).inc()
            status = _FAILURE_STATUS.get(e.kind, PipelineStatus.RUNNER_ERROR)
            logger.error(f"Runner call failed: {str(e)}", extra={**log_ctx, "stage": "runner_call", "overall_status": status})
            return self._terminal_summary(job, status, ledger)
        except Exception as e:
            RUNNER_FAILURES_TOTAL.labels(kind="unexpected").inc()
            logger.exception(f"Unexpected error calling runner: {str(e)}", extra={**log_ctx, "stage": "runner_call"})
            return self._terminal_summary(job, PipelineStatus.RUNNER_ERROR, ledger)

        return self.summarize(job, response, ledger)

    def summarize(self, job: EvaluationJob, response: EvaluateResponse, ledger: TestCaseLedger) -> EvaluationSummary:
        obtained, possible = score_outcomes(response.results, ledger.point_table, response.compilation_success)
        return EvaluationSummary(
            submission_id=job.submission_id,
            evaluated_language=job.language,
            overall_status=response.overall_status,
            compilation_success=response.compilation_success,
            compiler_output=response.compiler_output,
            results=label_and_redact(response.results, ledger),
            points_obtained=obtained,
            total_possible_points=possible,
        )

    def _terminal_summary(self, job: EvaluationJob, status: str, ledger: Optional[TestCaseLedger]) -> EvaluationSummary:
        possible = ledger.total_points if ledger is not None else 0
        return EvaluationSummary(
            submission_id=job.submission_id,
            evaluated_language=job.language,
            overall_status=status,
            compilation_success=False,
            results=[],
            points_obtained=0,
            total_possible_points=possible,
        )

    def _persist(self, db: Session, submission_id: int, summary: EvaluationSummary, log_ctx: dict) -> bool:
        # All six columns in one statement; an overlapping run may have
        # committed since this run loaded the submission
        try:
            db.execute(
                update(AssignmentSubmission)
                .where(AssignmentSubmission.id == submission_id)
                .values(
                    last_evaluated_at=datetime.utcnow(),
                    last_evaluation_overall_status=summary.overall_status,
                    last_evaluation_points_obtained=summary.points_obtained,
                    last_evaluation_total_possible_points=summary.total_possible_points,
                    last_evaluated_language=summary.evaluated_language,
                    last_evaluation_details_json=json.dumps(summary.to_wire()),
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception as e:
            db.rollback()
            EVALUATION_PERSIST_FAILURES_TOTAL.inc()
            logger.error(
                f"Failed to save evaluation results: {str(e)}",
                extra={**log_ctx, "stage": "persist", "overall_status": summary.overall_status},
            )
            return False
        logger.info(
            f"Saved evaluation results. Points: {summary.points_obtained}/{summary.total_possible_points}",
            extra={**log_ctx, "stage": "persist", "overall_status": summary.overall_status},
        )
        return True

    def _notify(self, job: EvaluationJob, summary: EvaluationSummary, log_ctx: dict) -> None:
        try:
            self.notifier.notify_user(job.caller_id, summary, job.submission_id, job.language)
        except Exception as e:
            logger.error(f"Failed to notify user: {str(e)}", extra={**log_ctx, "stage": "notify"})
