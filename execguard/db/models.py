"""
Database Models for execguard
=============================

SQLAlchemy models for lessons, task history and pending approvals.
"""

from datetime import datetime
from typing import Optional, List

from sqlalchemy import String, Integer, Float, DateTime, JSON, Text, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class LessonModel(Base):
    """A lesson learned from a task outcome."""
    __tablename__ = "lessons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    # Classification
    task_type: Mapped[str] = mapped_column(String(100), index=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    tags: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Narrative
    task_description: Mapped[str] = mapped_column(Text)
    initial_approach: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Outcome
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_pattern: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)

    # Learning
    root_cause: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    solution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lesson_summary: Mapped[str] = mapped_column(Text)

    # Metrics
    attempts_before_success: Mapped[int] = mapped_column(Integer, default=1)
    time_to_resolution_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relevance
    relevance_score: Mapped[float] = mapped_column(Float, default=1.0, index=True)
    times_applied: Mapped[int] = mapped_column(Integer, default=0)
    last_applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class TaskHistoryModel(Base):
    """Append-only record of one command execution."""
    __tablename__ = "task_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), index=True)
    task_type: Mapped[str] = mapped_column(String(100))
    task_description: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), index=True)  # started, completed, failed, blocked
    risk_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lesson_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class PendingApprovalModel(Base):
    """An approval request awaiting a human decision."""
    __tablename__ = "pending_approvals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    command: Mapped[str] = mapped_column(Text)
    reason: Mapped[str] = mapped_column(Text)
    timeout_seconds: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending, approved, denied, timeout
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    responder: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
