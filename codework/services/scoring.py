from typing import Iterable, Mapping, NamedTuple, Optional

from codework.schemas.evaluation import EvaluationStatus, TestCaseResult
from codework.services.ledger import TestCaseLedger


class Score(NamedTuple):
    obtained: int
    possible: int


def score_outcomes(
    outcomes: Iterable[TestCaseResult],
    point_table: Mapping[str, int],
    compilation_success: bool = True,
) -> Score:
    """Points obtained and possible for one run.

    When compilation failed no test case ran: nothing is obtained and every
    test case in the table counts towards the possible total. Otherwise only
    outcomes whose id is in the table count; accepted ones earn their points.
    """
    if not compilation_success:
        return Score(0, sum(point_table.values()))

    obtained = 0
    possible = 0
    for outcome in outcomes:
        if outcome.test_case_id is None or outcome.test_case_id not in point_table:
            # test case removed after the runner was called
            continue
        points = point_table[outcome.test_case_id]
        possible += points
        if outcome.status == EvaluationStatus.ACCEPTED:
            obtained += points
    return Score(obtained, possible)


def label_and_redact(
    outcomes: Iterable[TestCaseResult],
    ledger: Optional[TestCaseLedger],
) -> list[TestCaseResult]:
    """Attach test case names and privacy flags, then blank out private ones.

    Returns new objects; the inputs are left untouched. A private outcome keeps
    only its status, duration and memory flag, which is all the score needs.
    """
    labelled = []
    for outcome in outcomes:
        entry = ledger.get(outcome.test_case_id) if ledger is not None else None
        if entry is None:
            labelled.append(outcome.model_copy(update={"is_private": False}))
            continue
        if entry.is_private:
            labelled.append(
                outcome.model_copy(
                    update={
                        "is_private": True,
                        "test_case_id": None,
                        "test_case_input_path": None,
                        "test_case_name": None,
                        "stdout": None,
                        "stderr": None,
                        "message": None,
                    }
                )
            )
        else:
            labelled.append(
                outcome.model_copy(update={"is_private": False, "test_case_name": entry.name})
            )
    return labelled
