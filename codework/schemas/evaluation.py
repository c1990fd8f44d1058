"""Wire and persisted shapes for submission evaluation.

Everything here serializes with camelCase keys: that is what the remote
runner speaks and what browser clients read off the push channel and the
``last_evaluation_details_json`` column.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EvaluationStatus:
    """Per-test-case status codes reported by the runner."""

    ACCEPTED = "ACCEPTED"
    WRONG_ANSWER = "WRONG_ANSWER"
    COMPILE_ERROR = "COMPILE_ERROR"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    TIME_LIMIT_EXCEEDED = "TIME_LIMIT_EXCEEDED"
    MEMORY_LIMIT_EXCEEDED = "MEMORY_LIMIT_EXCEEDED"
    FILE_ERROR = "FILE_ERROR"
    LANGUAGE_NOT_SUPPORTED = "LANGUAGE_NOT_SUPPORTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PipelineStatus:
    """Overall statuses produced by this service when no runner verdict exists."""

    RUNNER_REJECTED = "RunnerRejected"
    RUNNER_TIMEOUT = "RunnerTimeout"
    RUNNER_UNREACHABLE = "RunnerUnreachable"
    RUNNER_ERROR = "RunnerError"
    DATA_CHANGED = "DataChanged"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---- request to the runner ----

class TestCaseInfo(CamelModel):
    __test__ = False

    input_file_path: str
    expected_output_file_path: str
    test_case_id: Optional[str] = None
    max_execution_time_ms: int
    max_ram_mb: int = Field(alias="maxRamMB")


class EvaluateRequest(CamelModel):
    language: str
    version: Optional[str] = "latest"
    code_file_path: str
    test_cases: list[TestCaseInfo] = Field(min_length=1)

    def time_budget_seconds(self) -> float:
        return sum(tc.max_execution_time_ms for tc in self.test_cases) / 1000.0


# ---- response from the runner ----

class TestCaseResult(CamelModel):
    __test__ = False

    test_case_id: Optional[str] = None
    test_case_input_path: Optional[str] = None
    test_case_name: Optional[str] = None
    status: str = EvaluationStatus.INTERNAL_ERROR
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    message: Optional[str] = None
    duration_ms: Optional[int] = None
    maximum_memory_exception: bool = False
    is_private: Optional[bool] = None


class EvaluateResponse(CamelModel):
    overall_status: str = "Error"
    compilation_success: bool = False
    compiler_output: Optional[str] = None
    results: list[TestCaseResult] = Field(default_factory=list)


# ---- what gets persisted and pushed ----

class EvaluationSummary(CamelModel):
    submission_id: int
    evaluated_language: str
    overall_status: str
    compilation_success: bool = False
    compiler_output: Optional[str] = None
    results: list[TestCaseResult] = Field(default_factory=list)
    points_obtained: Optional[int] = None
    total_possible_points: Optional[int] = None


class TriggerAcceptedResponse(CamelModel):
    message: str = "Evaluation process started. You will be notified when results are ready."
    submission_id: int
    language: str
    job_id: Optional[str] = None


class LatestEvaluationResponse(CamelModel):
    submission_id: int
    last_evaluated_at: Optional[str] = None
    overall_status: Optional[str] = None
    evaluated_language: Optional[str] = None
    points_obtained: Optional[int] = None
    total_possible_points: Optional[int] = None
    details: Optional[EvaluationSummary] = None
