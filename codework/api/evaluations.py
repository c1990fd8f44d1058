import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session

from codework.core.security import decode_user_id, get_current_user_id
from codework.db.session import SessionLocal, get_db
from codework.models import AssignmentSubmission
from codework.schemas.evaluation import (
    EvaluationSummary,
    LatestEvaluationResponse,
    TriggerAcceptedResponse,
)
from codework.services.evaluation import EvaluationOrchestrator, can_access_submission
from codework.services.notifier import subscribe_user_events

logger = logging.getLogger(__name__)
router = APIRouter()

_orchestrator: Optional[EvaluationOrchestrator] = None


def get_orchestrator() -> EvaluationOrchestrator:
    """API-side orchestrator: validates triggers and hands jobs to Celery."""
    global _orchestrator
    if _orchestrator is None:
        from codework.core.celery import CeleryEvaluationQueue

        _orchestrator = EvaluationOrchestrator(session_factory=SessionLocal, queue=CeleryEvaluationQueue())
    return _orchestrator


def get_event_source():
    """Async iterator factory yielding result envelopes for one user."""
    return subscribe_user_events


@router.post("/submission-evaluations/{submission_id}/trigger", status_code=status.HTTP_202_ACCEPTED)
@router.post("/evaluations/{submission_id}/trigger", status_code=status.HTTP_202_ACCEPTED, include_in_schema=False)
def trigger_evaluation(
    submission_id: int,
    language: Optional[str] = Query(None, description="Language to compile and run the solution as"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    orchestrator: EvaluationOrchestrator = Depends(get_orchestrator),
):
    """Start evaluating a submission; the result arrives on /ws/evaluations."""
    accepted = orchestrator.trigger(db, submission_id, language, user_id)
    return TriggerAcceptedResponse(
        submission_id=accepted.submission_id,
        language=accepted.language,
        job_id=accepted.job_id,
    ).to_wire()


@router.get("/submission-evaluations/{submission_id}/latest")
def get_latest_evaluation(
    submission_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    submission = db.get(AssignmentSubmission, submission_id)
    if submission is None:
        raise HTTPException(404, "Submission not found")
    if not can_access_submission(db, user_id, submission):
        raise HTTPException(403, "You are not allowed to view this submission")

    details = None
    if submission.last_evaluation_details_json:
        try:
            details = EvaluationSummary.model_validate(json.loads(submission.last_evaluation_details_json))
        except ValueError as e:
            logger.warning(
                f"Stored evaluation details are unreadable: {str(e)}",
                extra={"submission_id": submission_id},
            )

    return LatestEvaluationResponse(
        submission_id=submission.id,
        last_evaluated_at=submission.last_evaluated_at.isoformat() if submission.last_evaluated_at else None,
        overall_status=submission.last_evaluation_overall_status,
        evaluated_language=submission.last_evaluated_language,
        points_obtained=submission.last_evaluation_points_obtained,
        total_possible_points=submission.last_evaluation_total_possible_points,
        details=details,
    ).to_wire()


@router.websocket("/ws/evaluations")
async def evaluation_events(
    websocket: WebSocket,
    access_token: Optional[str] = Query(None),
    event_source=Depends(get_event_source),
):
    """Push channel for evaluation results of the authenticated user.

    Browsers cannot set headers on WebSocket upgrades, so the token may come
    as the ``access_token`` query parameter.
    """
    token = access_token
    if not token:
        auth = websocket.headers.get("authorization", "")
        if auth.lower().startswith("bearer "):
            token = auth[7:]
    user_id = decode_user_id(token)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info("evaluation_channel_connected", extra={"user_id": user_id})

    async def _forward():
        async for event in event_source(user_id):
            await websocket.send_json(event)

    async def _drain():
        # Client messages are ignored; this only notices the disconnect
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(_forward()), asyncio.create_task(_drain())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Evaluation channel failed: {str(exc)}", extra={"user_id": user_id})
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("evaluation_channel_disconnected", extra={"user_id": user_id})
