import pytest

from codework.models import Assignment, SubmittedFile, TestCase
from codework.services.evaluation import (
    EvaluationJob,
    Forbidden,
    MissingSolution,
    NoTestCases,
    NotEvaluable,
    SubmissionNotFound,
    UnsupportedLanguage,
)
from tests.conftest import OUTSIDER_ID, STUDENT_ID, TEACHER_ID


@pytest.mark.parametrize("language", ["ruby", "", "   ", None, "pythonn", "c++"])
def test_unsupported_language_rejected_without_queueing(orchestrator, queue, db, seeded, language):
    with pytest.raises(UnsupportedLanguage):
        orchestrator.trigger(db, seeded.id, language, STUDENT_ID)
    assert queue.jobs == []


@pytest.mark.parametrize("language,normalized", [("PYTHON", "python"), (" Java ", "java"), ("Go", "go")])
def test_language_is_matched_case_insensitively(orchestrator, queue, db, seeded, language, normalized):
    accepted = orchestrator.trigger(db, seeded.id, language, STUDENT_ID)

    assert accepted.language == normalized
    assert queue.jobs[0].language == normalized


def test_language_is_checked_before_existence(orchestrator, db, seeded):
    with pytest.raises(UnsupportedLanguage):
        orchestrator.trigger(db, 999, "cobol", STUDENT_ID)


def test_missing_submission_is_not_found(orchestrator, queue, db, seeded):
    with pytest.raises(SubmissionNotFound) as excinfo:
        orchestrator.trigger(db, 999, "python", STUDENT_ID)
    assert excinfo.value.status_code == 404
    assert queue.jobs == []


def test_non_code_assignment_is_not_evaluable(orchestrator, queue, db, seeded):
    db.get(Assignment, 1).is_code_assignment = False
    db.commit()

    with pytest.raises(NotEvaluable):
        orchestrator.trigger(db, seeded.id, "python", STUDENT_ID)
    assert queue.jobs == []


def test_missing_solution_rejected_even_without_test_cases(orchestrator, queue, db, seeded):
    db.delete(db.get(SubmittedFile, 1))
    db.query(TestCase).delete()
    db.commit()
    db.expire_all()

    with pytest.raises(MissingSolution):
        orchestrator.trigger(db, seeded.id, "python", STUDENT_ID)
    assert queue.jobs == []


def test_non_solution_files_do_not_count(orchestrator, db, seeded):
    db.get(SubmittedFile, 1).file_name = "notes.txt"
    db.commit()

    with pytest.raises(MissingSolution):
        orchestrator.trigger(db, seeded.id, "python", STUDENT_ID)


def test_no_test_cases_rejected_when_solution_exists(orchestrator, queue, db, seeded):
    db.query(TestCase).delete()
    db.commit()
    db.expire_all()

    with pytest.raises(NoTestCases):
        orchestrator.trigger(db, seeded.id, "python", STUDENT_ID)
    assert queue.jobs == []


@pytest.mark.parametrize("caller", [OUTSIDER_ID, "not-a-number", ""])
def test_unrelated_caller_is_forbidden(orchestrator, queue, db, seeded, caller):
    with pytest.raises(Forbidden) as excinfo:
        orchestrator.trigger(db, seeded.id, "python", caller)
    assert excinfo.value.status_code == 403
    assert queue.jobs == []


@pytest.mark.parametrize("caller", [STUDENT_ID, TEACHER_ID, str(TEACHER_ID)])
def test_owner_student_and_teacher_are_accepted(orchestrator, queue, db, seeded, caller):
    accepted = orchestrator.trigger(db, seeded.id, "python", caller)

    assert accepted.submission_id == seeded.id
    assert accepted.job_id == "job-1"
    (job,) = queue.jobs
    assert isinstance(job, EvaluationJob)
    assert job.submission_id == seeded.id
    assert job.caller_id == str(caller)


def test_trigger_does_not_call_runner_or_notifier(orchestrator, runner, notifier, db, seeded):
    orchestrator.trigger(db, seeded.id, "python", STUDENT_ID)

    assert runner.calls == []
    assert notifier.sent == []


def test_job_survives_serialization():
    job = EvaluationJob(submission_id=5, language="go", caller_id="7")

    assert EvaluationJob.from_dict(job.to_dict()) == job
