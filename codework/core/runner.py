import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from codework.core.config import settings
from codework.schemas.evaluation import EvaluateRequest, EvaluateResponse

logger = logging.getLogger(__name__)

EVALUATE_PATH = "/api/evaluate/orchestrate"


class RunnerError(Exception):
    """Base for every failure talking to the remote code runner."""

    kind = "unexpected"


class RunnerTimeout(RunnerError):
    kind = "timeout"


class RunnerUnreachable(RunnerError):
    kind = "unreachable"


class RunnerRejected(RunnerError):
    kind = "rejected"

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"runner responded with HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class RunnerUnexpected(RunnerError):
    kind = "unexpected"


class RunnerClient:
    """Narrow client for the runner's compile-and-run-against-N-test-cases call.

    Every failure mode comes back as a ``RunnerError`` subclass so callers can
    classify without inspecting transport exceptions.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_key_header: str = "X-Api-Key",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("runner base URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_key_header = api_key_header
        self._transport = transport

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers={
                self.api_key_header: self.api_key,
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
            transport=self._transport,
        )

    def evaluate(self, request: EvaluateRequest, timeout: float) -> EvaluateResponse:
        body = request.to_wire()
        try:
            with self._client(timeout) as client:
                response = client.post(EVALUATE_PATH, json=body)
        except httpx.TimeoutException as e:
            raise RunnerTimeout(f"runner did not answer within {timeout:.0f}s") from e
        except httpx.TransportError as e:
            raise RunnerUnreachable(f"runner transport failure: {e}") from e
        except Exception as e:
            raise RunnerUnexpected(str(e)) from e

        if not response.is_success:
            text = response.text[:2000]
            logger.error(
                f"Runner returned HTTP {response.status_code}",
                extra={"status_code": response.status_code, "stage": "runner_call"},
            )
            raise RunnerRejected(response.status_code, text)

        try:
            return EvaluateResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RunnerUnexpected(f"malformed runner response: {e}") from e


def get_runner_client() -> RunnerClient:
    """Build a client from settings."""
    return RunnerClient(
        base_url=settings.RUNNER_BASE_URL,
        api_key=settings.RUNNER_API_KEY,
        api_key_header=settings.RUNNER_API_KEY_HEADER,
    )
