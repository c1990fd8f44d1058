from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from codework.models import TestCase


def storage_path(directory: str, stored_name: str) -> str:
    """Join a storage directory and stored file name the way the runner expects."""
    directory = (directory or "").replace("\\", "/").rstrip("/")
    name = (stored_name or "").replace("\\", "/").lstrip("/")
    return f"{directory}/{name}" if directory else name


@dataclass(frozen=True)
class LedgerEntry:
    test_case_id: str
    name: str
    input_path: str
    expected_output_path: str
    points: int
    max_execution_time_ms: int
    max_ram_mb: int
    is_private: bool


@dataclass(frozen=True)
class TestCaseLedger:
    """Snapshot of an assignment's test cases at the moment a run starts.

    Scoring and redaction read only from the snapshot, so edits made to the
    assignment while the runner is busy do not leak into this run.
    """

    __test__ = False

    assignment_id: int
    entries: tuple

    @property
    def point_table(self) -> Mapping[str, int]:
        return MappingProxyType({e.test_case_id: e.points for e in self.entries})

    @property
    def total_points(self) -> int:
        return sum(e.points for e in self.entries)

    def get(self, test_case_id: Optional[str]) -> Optional[LedgerEntry]:
        if test_case_id is None:
            return None
        for entry in self.entries:
            if entry.test_case_id == test_case_id:
                return entry
        return None

    def __len__(self) -> int:
        return len(self.entries)


def entry_from_model(tc: TestCase) -> LedgerEntry:
    return LedgerEntry(
        test_case_id=str(tc.id),
        name=tc.input_file_name,
        input_path=storage_path(tc.input_file_path, tc.input_stored_file_name),
        expected_output_path=storage_path(tc.expected_output_file_path, tc.expected_output_stored_file_name),
        points=max(0, int(tc.points or 0)),
        max_execution_time_ms=int(tc.max_execution_time_ms),
        max_ram_mb=int(tc.max_ram_mb),
        is_private=bool(tc.is_private),
    )


def load_ledger(db: Session, assignment_id: int) -> TestCaseLedger:
    rows = (
        db.query(TestCase)
        .filter(TestCase.assignment_id == assignment_id)
        .order_by(TestCase.id.asc())
        .all()
    )
    return TestCaseLedger(
        assignment_id=assignment_id,
        entries=tuple(entry_from_model(tc) for tc in rows),
    )
