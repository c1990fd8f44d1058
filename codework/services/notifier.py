import json
import logging
from typing import AsyncIterator, Optional

import redis
import redis.asyncio as aioredis

from codework.core.config import settings
from codework.core.metrics import EVALUATION_NOTIFICATIONS_TOTAL
from codework.schemas.evaluation import EvaluationSummary

logger = logging.getLogger(__name__)

RESULT_EVENT = "ReceiveEvaluationResult"


def user_channel(user_id) -> str:
    return f"evaluations:user:{user_id}"


def build_envelope(summary: EvaluationSummary, submission_id: int, language: str) -> dict:
    return {
        "event": RESULT_EVENT,
        "summary": summary.to_wire(),
        "submissionId": submission_id,
        "language": language,
    }


class ResultNotifier:
    """Best-effort push of evaluation results to a user's connected sessions.

    Publishes on a Redis channel per user. Every open WebSocket of that user
    holds its own subscription, so one publish reaches all of them; with no
    subscribers the message is simply dropped.
    """

    def __init__(self, redis_client=None):
        self._redis = redis_client

    @property
    def redis_client(self):
        if self._redis is None:
            self._redis = redis.from_url(
                settings.REDIS_URL,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
        return self._redis

    def notify_user(self, user_id, summary: EvaluationSummary, submission_id: int, language: str) -> bool:
        """Publish the result; returns whether any session received it. Never raises."""
        payload = json.dumps(build_envelope(summary, submission_id, language))
        try:
            receivers = self.redis_client.publish(user_channel(user_id), payload)
        except Exception as e:
            EVALUATION_NOTIFICATIONS_TOTAL.labels(result="failed").inc()
            logger.error(
                f"Failed to publish evaluation result: {str(e)}",
                extra={"submission_id": submission_id, "user_id": str(user_id), "stage": "notify"},
            )
            return False

        delivered = bool(receivers)
        EVALUATION_NOTIFICATIONS_TOTAL.labels(result="delivered" if delivered else "no_subscribers").inc()
        logger.info(
            "evaluation_result_published" if delivered else "evaluation_result_dropped_no_subscribers",
            extra={
                "submission_id": submission_id,
                "user_id": str(user_id),
                "language": language,
                "overall_status": summary.overall_status,
                "stage": "notify",
            },
        )
        return delivered


async def subscribe_user_events(user_id, redis_url: Optional[str] = None) -> AsyncIterator[dict]:
    """Yield decoded result envelopes published for ``user_id`` until cancelled."""
    client = aioredis.from_url(redis_url or settings.REDIS_URL, decode_responses=True)
    pubsub = client.pubsub(ignore_subscribe_messages=True)
    await pubsub.subscribe(user_channel(user_id))
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                yield json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("evaluation_event_undecodable", extra={"user_id": str(user_id)})
    finally:
        await pubsub.unsubscribe(user_channel(user_id))
        await pubsub.aclose()
        await client.aclose()
