import pytest
from fastapi.testclient import TestClient

from codework.api.evaluations import get_orchestrator
from codework.db.session import get_db
from codework.main import app
from codework.models import TestCase
from tests.conftest import OUTSIDER_ID, STUDENT_ID, TEACHER_ID, make_token


@pytest.fixture
def client(session_factory, orchestrator):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _auth(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def _trigger(client, submission_id=1, language="python", user_id=STUDENT_ID):
    headers = _auth(user_id) if user_id is not None else {}
    params = {"language": language} if language is not None else {}
    return client.post(f"/api/submission-evaluations/{submission_id}/trigger", params=params, headers=headers)


def test_trigger_returns_202_and_queues_job(client, queue, seeded):
    response = _trigger(client, language="Python")

    assert response.status_code == 202
    body = response.json()
    assert body["submissionId"] == 1
    assert body["language"] == "python"
    assert body["jobId"] == "job-1"
    assert [job.caller_id for job in queue.jobs] == [str(STUDENT_ID)]


def test_missing_token_is_401(client, queue, seeded):
    response = _trigger(client, user_id=None)

    assert response.status_code == 401
    assert queue.jobs == []


def test_token_signed_with_other_secret_is_401(client, seeded):
    headers = {"Authorization": f"Bearer {make_token(STUDENT_ID, secret='someone-else')}"}

    response = client.post("/api/submission-evaluations/1/trigger", params={"language": "python"}, headers=headers)

    assert response.status_code == 401


def test_expired_token_is_401(client, seeded):
    headers = {"Authorization": f"Bearer {make_token(STUDENT_ID, expires_in=-60)}"}

    response = client.post("/api/submission-evaluations/1/trigger", params={"language": "python"}, headers=headers)

    assert response.status_code == 401


@pytest.mark.parametrize("language", ["brainfuck", None])
def test_unsupported_language_is_400(client, queue, seeded, language):
    response = _trigger(client, language=language)

    assert response.status_code == 400
    assert response.json()["reason"] == "UnsupportedLanguage"
    assert queue.jobs == []


def test_unknown_submission_is_404(client, seeded):
    response = _trigger(client, submission_id=404)

    assert response.status_code == 404
    assert response.json()["reason"] == "NotFound"


def test_outsider_is_403(client, queue, seeded):
    response = _trigger(client, user_id=OUTSIDER_ID)

    assert response.status_code == 403
    assert response.json()["reason"] == "Forbidden"
    assert queue.jobs == []


def test_no_test_cases_is_400(client, db, seeded):
    db.query(TestCase).delete()
    db.commit()

    response = _trigger(client)

    assert response.status_code == 400
    assert response.json()["reason"] == "NoTestCases"


def test_latest_before_any_run(client, seeded):
    response = client.get("/api/submission-evaluations/1/latest", headers=_auth(STUDENT_ID))

    assert response.status_code == 200
    body = response.json()
    assert body["lastEvaluatedAt"] is None
    assert body["details"] is None


def test_latest_after_run_returns_redacted_details(client, orchestrator, queue, seeded):
    assert _trigger(client, user_id=TEACHER_ID).status_code == 202
    orchestrator.run(queue.jobs[0])

    response = client.get("/api/submission-evaluations/1/latest", headers=_auth(STUDENT_ID))

    assert response.status_code == 200
    body = response.json()
    assert body["overallStatus"] == "COMPLETED"
    assert body["pointsObtained"] == 30
    assert body["totalPossiblePoints"] == 100
    assert body["evaluatedLanguage"] == "python"
    assert body["lastEvaluatedAt"] is not None
    private = body["details"]["results"][1]
    assert private["isPrivate"] is True
    assert private["stdout"] is None


def test_latest_requires_access(client, seeded):
    assert client.get("/api/submission-evaluations/1/latest", headers=_auth(OUTSIDER_ID)).status_code == 403
    assert client.get("/api/submission-evaluations/9/latest", headers=_auth(STUDENT_ID)).status_code == 404
    assert client.get("/api/submission-evaluations/1/latest").status_code == 401
