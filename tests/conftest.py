import os
import time

# Settings are read at import time; point everything at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("JWT_ISSUER", "codework")
os.environ.setdefault("JWT_AUDIENCE", "codework-api")
os.environ.setdefault("RUNNER_BASE_URL", "http://runner.test")
os.environ.setdefault("RUNNER_API_KEY", "runner-key")

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from codework.db.base import Base
from codework.models import (
    Assignment,
    AssignmentSubmission,
    Classroom,
    ClassroomMember,
    ClassroomRole,
    SubmittedFile,
    TestCase,
    User,
)
from codework.schemas.evaluation import EvaluateResponse, EvaluationStatus, TestCaseResult
from codework.services.evaluation import EvaluationOrchestrator

TEACHER_ID = 1
STUDENT_ID = 2
OUTSIDER_ID = 3


class FakeRunner:
    """Stands in for RunnerClient: records calls, replays a response or raises."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []
        self.on_call = None

    def evaluate(self, request, timeout):
        self.calls.append((request, timeout))
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error
        return self.response


class FakeNotifier:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    def notify_user(self, user_id, summary, submission_id, language):
        self.sent.append(
            {"user_id": user_id, "summary": summary, "submission_id": submission_id, "language": language}
        )
        if self.error is not None:
            raise self.error
        return True


class RecordingQueue:
    def __init__(self):
        self.jobs = []

    def submit(self, job):
        self.jobs.append(job)
        return f"job-{len(self.jobs)}"


def make_token(user_id, secret="test-secret", expires_in=3600):
    now = int(time.time())
    payload = {
        "iss": "codework",
        "aud": "codework-api",
        "iat": now,
        "exp": now + expires_in,
        "sub": str(user_id),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def runner_response(first=EvaluationStatus.ACCEPTED, second=EvaluationStatus.WRONG_ANSWER, ids=("1", "2")):
    return EvaluateResponse(
        overall_status="COMPLETED",
        compilation_success=True,
        results=[
            TestCaseResult(
                test_case_id=ids[0],
                test_case_input_path="fixtures/a1/in1.txt",
                status=first,
                stdout="3\n",
                duration_ms=12,
            ),
            TestCaseResult(
                test_case_id=ids[1],
                test_case_input_path="fixtures/a1/in2.txt",
                status=second,
                stdout="secret-private-output",
                stderr="secret-private-stderr",
                message="expected 42",
                duration_ms=15,
            ),
        ],
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def seeded(db):
    """Classroom with a teacher, a student and an outsider; one code assignment
    worth 30 (public) + 70 (private) points; one submission with a solution."""
    db.add_all([
        User(id=TEACHER_ID, username="teacher"),
        User(id=STUDENT_ID, username="student"),
        User(id=OUTSIDER_ID, username="outsider"),
    ])
    classroom = Classroom(id=1, name="Algorithms 101")
    db.add(classroom)
    db.add_all([
        ClassroomMember(user_id=TEACHER_ID, classroom_id=1, role=ClassroomRole.TEACHER),
        ClassroomMember(user_id=STUDENT_ID, classroom_id=1, role=ClassroomRole.STUDENT),
    ])
    assignment = Assignment(id=1, classroom_id=1, title="Sum two numbers", is_code_assignment=True)
    db.add(assignment)
    db.add_all([
        TestCase(
            id=1,
            assignment_id=1,
            input_file_name="in1.txt",
            input_stored_file_name="in1.txt",
            input_file_path="fixtures/a1",
            expected_output_file_name="out1.txt",
            expected_output_stored_file_name="out1.txt",
            expected_output_file_path="fixtures/a1",
            points=30,
            max_execution_time_ms=2000,
            max_ram_mb=128,
            is_private=False,
        ),
        TestCase(
            id=2,
            assignment_id=1,
            input_file_name="in2.txt",
            input_stored_file_name="in2.txt",
            input_file_path="fixtures\\a1",
            expected_output_file_name="out2.txt",
            expected_output_stored_file_name="out2.txt",
            expected_output_file_path="fixtures/a1/",
            points=70,
            max_execution_time_ms=2000,
            max_ram_mb=256,
            is_private=True,
        ),
    ])
    submission = AssignmentSubmission(id=1, assignment_id=1, student_id=STUDENT_ID)
    db.add(submission)
    db.add(
        SubmittedFile(
            id=1,
            assignment_submission_id=1,
            file_name="Solution",
            stored_file_name="abc123.py",
            file_path="uploads/submissions/1",
        )
    )
    db.commit()
    return submission


@pytest.fixture
def runner():
    return FakeRunner(response=runner_response())


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def orchestrator(session_factory, runner, notifier, queue):
    return EvaluationOrchestrator(
        session_factory=session_factory,
        runner=runner,
        notifier=notifier,
        queue=queue,
        supported_languages=frozenset({"c", "java", "rust", "go", "python"}),
        runner_timeout=300,
        timeout_margin=30,
    )
