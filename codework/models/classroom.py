import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from codework.db.base import Base


class ClassroomRole(str, enum.Enum):
    OWNER = "owner"
    TEACHER = "teacher"
    STUDENT = "student"


# Roles allowed to act on any submission in their classroom
ELEVATED_ROLES = frozenset({ClassroomRole.OWNER, ClassroomRole.TEACHER})


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Classroom(Base):
    __tablename__ = "classrooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    members = relationship("ClassroomMember", back_populates="classroom")
    assignments = relationship("Assignment", back_populates="classroom")


class ClassroomMember(Base):
    __tablename__ = "classroom_members"

    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"), primary_key=True)
    role = Column(Enum(ClassroomRole), nullable=False)
    joined_at = Column(DateTime, default=datetime.utcnow)

    classroom = relationship("Classroom", back_populates="members")


class Assignment(Base):
    __tablename__ = "assignments"

    id = Column(Integer, primary_key=True, index=True)
    classroom_id = Column(Integer, ForeignKey("classrooms.id"), index=True, nullable=False)
    title = Column(String(200), nullable=False)
    instructions = Column(Text, nullable=True)
    is_code_assignment = Column(Boolean, default=False, nullable=False)
    max_points = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    classroom = relationship("Classroom", back_populates="assignments")
    test_cases = relationship(
        "TestCase",
        back_populates="assignment",
        order_by="TestCase.id",
        cascade="all, delete-orphan",
    )
    submissions = relationship("AssignmentSubmission", back_populates="assignment")


class TestCase(Base):
    __tablename__ = "test_cases"
    __test__ = False  # keep pytest from collecting the model

    id = Column(Integer, primary_key=True, index=True)
    assignment_id = Column(Integer, ForeignKey("assignments.id"), index=True, nullable=False)

    input_file_name = Column(String(255), nullable=False)
    input_stored_file_name = Column(String(255), nullable=False)
    input_file_path = Column(String(1024), nullable=False)

    expected_output_file_name = Column(String(255), nullable=False)
    expected_output_stored_file_name = Column(String(255), nullable=False)
    expected_output_file_path = Column(String(1024), nullable=False)

    points = Column(Integer, nullable=False, default=0)
    max_execution_time_ms = Column(Integer, nullable=False, default=2000)
    max_ram_mb = Column(Integer, nullable=False, default=128)
    is_private = Column(Boolean, nullable=False, default=False)
    added_at = Column(DateTime, default=datetime.utcnow)

    assignment = relationship("Assignment", back_populates="test_cases")
