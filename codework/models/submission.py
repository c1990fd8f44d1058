from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from codework.db.base import Base


class AssignmentSubmission(Base):
    __tablename__ = "assignment_submissions"

    id = Column(Integer, primary_key=True, index=True)
    assignment_id = Column(Integer, ForeignKey("assignments.id"), index=True, nullable=False)
    student_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    submitted_at = Column(DateTime, nullable=True)

    # Latest evaluation snapshot; written together by the evaluation worker
    last_evaluated_at = Column(DateTime, nullable=True)
    last_evaluation_overall_status = Column(String(64), nullable=True)
    last_evaluation_points_obtained = Column(Integer, nullable=True)
    last_evaluation_total_possible_points = Column(Integer, nullable=True)
    last_evaluated_language = Column(String(32), nullable=True)
    last_evaluation_details_json = Column(Text, nullable=True)

    assignment = relationship("Assignment", back_populates="submissions")
    files = relationship(
        "SubmittedFile",
        back_populates="submission",
        order_by="SubmittedFile.id",
        cascade="all, delete-orphan",
    )

    def solution_file(self):
        """The uploaded artifact named ``solution`` (case-insensitive), if any."""
        for f in self.files:
            if (f.file_name or "").lower() == "solution":
                return f
        return None


class SubmittedFile(Base):
    __tablename__ = "submitted_files"

    id = Column(Integer, primary_key=True, index=True)
    assignment_submission_id = Column(
        Integer, ForeignKey("assignment_submissions.id"), index=True, nullable=False
    )
    file_name = Column(String(255), nullable=False)
    stored_file_name = Column(String(255), nullable=False)
    file_path = Column(String(1024), nullable=False)
    content_type = Column(String(100), nullable=True)
    file_size = Column(BigInteger, default=0)
    uploaded_at = Column(DateTime, default=datetime.utcnow)

    submission = relationship("AssignmentSubmission", back_populates="files")
