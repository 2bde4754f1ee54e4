from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase): pass


class AnswerKeyRecord(Base):
    __tablename__ = "answer_keys"
    exam_id: Mapped[str] = mapped_column(String, primary_key=True)
    exam_type: Mapped[str] = mapped_column(String)
    options: Mapped[str] = mapped_column(String, default="ABCDE")
    items: Mapped[list] = mapped_column(JSON)
    rotations: Mapped[dict] = mapped_column(JSON)
    prerequisites: Mapped[dict] = mapped_column(JSON, default=dict)
    topic_names: Mapped[dict] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AnswerSheetRecord(Base):
    __tablename__ = "answer_sheets"
    exam_id: Mapped[str] = mapped_column(String, primary_key=True)
    student_id: Mapped[str] = mapped_column(String, primary_key=True)
    student_name: Mapped[str | None] = mapped_column(String, nullable=True)
    class_name: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    booklet: Mapped[str] = mapped_column(String(4))
    answers: Mapped[list] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SnapshotRecord(Base):
    __tablename__ = "analytics_snapshots"
    exam_id: Mapped[str] = mapped_column(String, primary_key=True)
    student_id: Mapped[str] = mapped_column(String, primary_key=True)
    input_hash: Mapped[str] = mapped_column(String(64))
    content_hash: Mapped[str] = mapped_column(String(64))
    calculation_version: Mapped[str] = mapped_column(String)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    invalidation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON)


class RecomputeJobRecord(Base):
    __tablename__ = "recompute_jobs"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    exam_id: Mapped[str] = mapped_column(String, index=True)
    student_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
