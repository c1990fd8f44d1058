from codework.models.classroom import (
    ELEVATED_ROLES,
    Assignment,
    Classroom,
    ClassroomMember,
    ClassroomRole,
    TestCase,
    User,
)
from codework.models.submission import AssignmentSubmission, SubmittedFile

__all__ = [
    "ELEVATED_ROLES",
    "Assignment",
    "AssignmentSubmission",
    "Classroom",
    "ClassroomMember",
    "ClassroomRole",
    "SubmittedFile",
    "TestCase",
    "User",
]
