"""
Knowledge Base
==============

Persistent store of lessons learned from task outcomes, plus an append-only
task history.

Retrieval is deliberately simple:
- exact match on a normalized "error pattern" (paths, dates, line numbers
  and other volatile tokens replaced by placeholders)
- keyword fallback through an SQLite FTS5 index over the narrative fields
- ranking by relevance score, which grows when a lesson is reused and
  decays over time

Storage: lessons, lessons_fts and task_history tables of the execguard
SQLite database (see execguard.db).
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select, text, update

from execguard.db import Database, LessonModel, TaskHistoryModel


logger = logging.getLogger(__name__)


MAX_ERROR_PATTERN_LENGTH = 200
MAX_HISTORY_FIELD_LENGTH = 10_000
MAX_RELEVANCE_SCORE = 10.0
APPLIED_BOOST = 1.1
DECAY_FLOOR = 0.1
MAX_KEYWORDS = 10

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "dare",
    "ought", "used", "to", "of", "in", "for", "on", "with", "at", "by",
    "from", "as", "into", "through", "during", "before", "after", "above",
    "below", "between", "under", "again", "further", "then", "once",
    "error", "failed", "cannot", "unable",
})

# Applied in order; paths stop at whitespace or ':' so line:col survives.
_ERROR_PATTERN_RULES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"[A-Za-z]:\\[^\s:]+"), "<PATH>"),
    (re.compile(r"/[^\s:]+"), "<PATH>"),
    (re.compile(r"\d{4}-\d{2}-\d{2}"), "<DATE>"),
    (re.compile(r"\d{2}:\d{2}:\d{2}"), "<TIME>"),
    (re.compile(r":\d+:\d+"), ":<LINE>:<COL>"),
    (re.compile(r"0x[0-9a-fA-F]+"), "<HEX>"),
    (re.compile(r"\b\d{5,}\b"), "<NUM>"),
]


def extract_error_pattern(error_message: str) -> str:
    """
    Normalize an error message into a reusable pattern.

    Example:
        "Error at /home/user/app/file.js:42:10 on 2024-01-01"
        -> "Error at <PATH>:<LINE>:<COL> on <DATE>"
    """
    pattern = error_message
    for regex, placeholder in _ERROR_PATTERN_RULES:
        pattern = regex.sub(placeholder, pattern)
    return pattern.strip()[:MAX_ERROR_PATTERN_LENGTH]


def extract_keywords(text_value: str) -> list[str]:
    """Significant words of an error message, in order of appearance."""
    cleaned = re.sub(r"[^a-z0-9\s]", " ", text_value.lower())
    words = [w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS]
    return words[:MAX_KEYWORDS]


def _truncate(value: Optional[str], limit: int = MAX_HISTORY_FIELD_LENGTH) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# =============================================================================
# Data Types
# =============================================================================

@dataclass
class Lesson:
    """A lesson learned from a task outcome."""

    task_type: str
    task_description: str
    lesson_summary: str
    success: bool = False

    category: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    initial_approach: Optional[str] = None

    error_message: Optional[str] = None
    error_pattern: Optional[str] = None

    root_cause: Optional[str] = None
    solution: Optional[str] = None

    attempts_before_success: int = 1
    time_to_resolution_ms: Optional[int] = None

    relevance_score: float = 1.0
    times_applied: int = 0
    last_applied_at: Optional[datetime] = None

    # Assigned by the store
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "created_at": _iso(self.created_at),
            "task_type": self.task_type,
            "category": self.category,
            "tags": list(self.tags),
            "task_description": self.task_description,
            "initial_approach": self.initial_approach,
            "success": self.success,
            "error_message": self.error_message,
            "error_pattern": self.error_pattern,
            "root_cause": self.root_cause,
            "solution": self.solution,
            "lesson_summary": self.lesson_summary,
            "attempts_before_success": self.attempts_before_success,
            "time_to_resolution_ms": self.time_to_resolution_ms,
            "relevance_score": self.relevance_score,
            "times_applied": self.times_applied,
            "last_applied_at": _iso(self.last_applied_at),
        }

    @classmethod
    def from_model(cls, model: LessonModel) -> "Lesson":
        """Create from a database row."""
        return cls(
            id=model.id,
            created_at=model.created_at,
            task_type=model.task_type,
            category=model.category,
            tags=list(model.tags or []),
            task_description=model.task_description,
            initial_approach=model.initial_approach,
            success=bool(model.success),
            error_message=model.error_message,
            error_pattern=model.error_pattern,
            root_cause=model.root_cause,
            solution=model.solution,
            lesson_summary=model.lesson_summary,
            attempts_before_success=model.attempts_before_success,
            time_to_resolution_ms=model.time_to_resolution_ms,
            relevance_score=model.relevance_score,
            times_applied=model.times_applied,
            last_applied_at=model.last_applied_at,
        )


@dataclass
class LessonQuery:
    """Filter for query_lessons. Unset fields don't filter."""
    task_type: Optional[str] = None
    category: Optional[str] = None
    error_pattern: Optional[str] = None  # substring match
    success_only: bool = False
    failure_only: bool = False
    min_relevance: Optional[float] = None
    limit: Optional[int] = None


@dataclass
class TaskHistoryEntry:
    """One command execution, written once."""

    task_id: str
    task_type: str
    task_description: str
    status: str  # started, completed, failed, blocked
    risk_level: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    output: Optional[str] = None
    error_output: Optional[str] = None
    lesson_id: Optional[int] = None
    id: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "task_id": self.task_id,
            "task_type": self.task_type,
            "task_description": self.task_description,
            "status": self.status,
            "risk_level": self.risk_level,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "output": self.output,
            "error_output": self.error_output,
            "lesson_id": self.lesson_id,
        }

    @classmethod
    def from_model(cls, model: TaskHistoryModel) -> "TaskHistoryEntry":
        """Create from a database row."""
        return cls(
            id=model.id,
            task_id=model.task_id,
            task_type=model.task_type,
            task_description=model.task_description,
            status=model.status,
            risk_level=model.risk_level,
            started_at=model.started_at,
            completed_at=model.completed_at,
            duration_ms=model.duration_ms,
            output=model.output,
            error_output=model.error_output,
            lesson_id=model.lesson_id,
        )


TASK_STATUSES = ("started", "completed", "failed", "blocked")


# =============================================================================
# Knowledge Base
# =============================================================================

class KnowledgeBase:
    """
    Lesson store backed by SQLite.

    Every method opens its own session, so a single KnowledgeBase can be
    shared between a guard and a planner.
    """

    def __init__(self, database: Database):
        self.database = database
        self._session_maker = database.session_maker

    # =========================================================================
    # Lessons
    # =========================================================================

    async def save_lesson(self, lesson: Lesson) -> int:
        """
        Persist a new lesson.

        The error pattern is derived from the error message when not given.

        Returns:
            The new lesson id
        """
        if not lesson.lesson_summary or not lesson.lesson_summary.strip():
            raise ValueError("lesson_summary is required")
        if lesson.attempts_before_success < 1:
            raise ValueError("attempts_before_success must be >= 1")

        error_pattern = lesson.error_pattern
        if not error_pattern and lesson.error_message:
            error_pattern = extract_error_pattern(lesson.error_message)

        model = LessonModel(
            task_type=lesson.task_type,
            category=lesson.category,
            tags=list(lesson.tags),
            task_description=lesson.task_description,
            initial_approach=lesson.initial_approach,
            success=lesson.success,
            error_message=lesson.error_message,
            error_pattern=error_pattern,
            root_cause=lesson.root_cause,
            solution=lesson.solution,
            lesson_summary=lesson.lesson_summary,
            attempts_before_success=lesson.attempts_before_success,
            time_to_resolution_ms=lesson.time_to_resolution_ms,
            relevance_score=1.0,
            times_applied=0,
        )

        async with self._session_maker() as session:
            session.add(model)
            await session.commit()
            lesson_id = model.id

        logger.debug("Saved lesson %s (%s)", lesson_id, lesson.task_type)
        return lesson_id

    async def get_lesson(self, lesson_id: int) -> Optional[Lesson]:
        """Fetch a lesson by id."""
        async with self._session_maker() as session:
            model = await session.get(LessonModel, lesson_id)
            return Lesson.from_model(model) if model else None

    async def query_lessons(self, query: Optional[LessonQuery] = None) -> list[Lesson]:
        """
        Query lessons with optional filters.

        Results are ordered by relevance score, then times applied, then
        newest first.
        """
        query = query or LessonQuery()
        stmt = select(LessonModel)

        if query.task_type:
            stmt = stmt.where(LessonModel.task_type == query.task_type)
        if query.category:
            stmt = stmt.where(LessonModel.category == query.category)
        if query.error_pattern:
            stmt = stmt.where(LessonModel.error_pattern.contains(query.error_pattern, autoescape=True))
        if query.success_only:
            stmt = stmt.where(LessonModel.success.is_(True))
        if query.failure_only:
            stmt = stmt.where(LessonModel.success.is_(False))
        if query.min_relevance is not None:
            stmt = stmt.where(LessonModel.relevance_score >= query.min_relevance)

        stmt = stmt.order_by(
            LessonModel.relevance_score.desc(),
            LessonModel.times_applied.desc(),
            LessonModel.created_at.desc(),
            LessonModel.id.desc(),
        )
        if query.limit:
            stmt = stmt.limit(query.limit)

        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [Lesson.from_model(m) for m in result.scalars().all()]

    async def search_lessons(self, search_text: str, limit: int = 10) -> list[Lesson]:
        """
        Full-text search over description, error, solution and summary.

        search_text uses FTS5 query syntax.
        """
        stmt = (
            select(LessonModel)
            .from_statement(text(
                "SELECT lessons.* FROM lessons_fts "
                "JOIN lessons ON lessons.id = lessons_fts.rowid "
                "WHERE lessons_fts MATCH :query "
                "ORDER BY rank LIMIT :limit"
            ))
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt, {"query": search_text, "limit": limit})
            return [Lesson.from_model(m) for m in result.scalars().all()]

    async def find_lessons_for_error(self, error_message: str, limit: int = 5) -> list[Lesson]:
        """
        Find lessons relevant to an error.

        Tries successful lessons with the same normalized error pattern
        first, then falls back to a keyword search.
        """
        pattern = extract_error_pattern(error_message)
        if pattern:
            exact = await self.query_lessons(LessonQuery(
                error_pattern=pattern,
                success_only=True,
                limit=limit,
            ))
            if exact:
                return exact

        keywords = extract_keywords(error_message)
        if not keywords:
            return []
        return await self.search_lessons(" OR ".join(keywords), limit)

    async def mark_lesson_applied(self, lesson_id: int) -> bool:
        """
        Record that a lesson was reused.

        Boosts relevance by 10% (capped at 10.0) and bumps times_applied.

        Returns:
            True if the lesson exists
        """
        stmt = (
            update(LessonModel)
            .where(LessonModel.id == lesson_id)
            .values(
                times_applied=LessonModel.times_applied + 1,
                last_applied_at=datetime.now(timezone.utc),
                relevance_score=func.min(LessonModel.relevance_score * APPLIED_BOOST, MAX_RELEVANCE_SCORE),
            )
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def decay_relevance_scores(self, decay_factor: float = 0.99) -> int:
        """
        Multiply every relevance score above 0.1 by decay_factor.

        Returns:
            Number of lessons decayed
        """
        if not 0 < decay_factor <= 1:
            raise ValueError("decay_factor must be in (0, 1]")

        stmt = (
            update(LessonModel)
            .where(LessonModel.relevance_score > DECAY_FLOOR)
            .values(relevance_score=LessonModel.relevance_score * decay_factor)
        )
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def get_recent_lessons(self, limit: int = 5) -> list[Lesson]:
        """Most recently created lessons."""
        stmt = select(LessonModel).order_by(LessonModel.created_at.desc(), LessonModel.id.desc()).limit(limit)
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [Lesson.from_model(m) for m in result.scalars().all()]

    async def get_lessons_for_task_type(self, task_type: str, limit: int = 3) -> list[Lesson]:
        """Relevant lessons for a task type."""
        return await self.query_lessons(LessonQuery(
            task_type=task_type,
            min_relevance=0.5,
            limit=limit,
        ))

    # =========================================================================
    # Task History
    # =========================================================================

    async def log_task_execution(self, entry: TaskHistoryEntry) -> int:
        """
        Append a task history entry.

        Output fields are truncated to 10,000 characters.

        Returns:
            The new entry id
        """
        if entry.status not in TASK_STATUSES:
            raise ValueError(f"Invalid task status: {entry.status}")

        model = TaskHistoryModel(
            task_id=entry.task_id,
            task_type=entry.task_type,
            task_description=entry.task_description,
            status=entry.status,
            risk_level=entry.risk_level,
            completed_at=entry.completed_at,
            duration_ms=entry.duration_ms,
            output=_truncate(entry.output),
            error_output=_truncate(entry.error_output),
            lesson_id=entry.lesson_id,
        )
        if entry.started_at is not None:
            model.started_at = entry.started_at

        async with self._session_maker() as session:
            session.add(model)
            await session.commit()
            return model.id

    async def get_task_history(self, limit: int = 20, status: Optional[str] = None) -> list[TaskHistoryEntry]:
        """Newest task history entries, optionally filtered by status."""
        stmt = select(TaskHistoryModel)
        if status:
            stmt = stmt.where(TaskHistoryModel.status == status)
        stmt = stmt.order_by(TaskHistoryModel.id.desc()).limit(limit)

        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return [TaskHistoryEntry.from_model(m) for m in result.scalars().all()]

    # =========================================================================
    # Statistics
    # =========================================================================

    async def get_stats(self) -> dict[str, Any]:
        """Summary statistics for the knowledge base."""
        async with self._session_maker() as session:
            total = await session.scalar(select(func.count(LessonModel.id)))
            successful = await session.scalar(
                select(func.count(LessonModel.id)).where(LessonModel.success.is_(True))
            )
            avg_relevance = await session.scalar(select(func.avg(LessonModel.relevance_score)))
            applied = await session.scalar(select(func.sum(LessonModel.times_applied)))
            tasks = await session.scalar(select(func.count(TaskHistoryModel.id)))

            result = await session.execute(
                select(LessonModel.task_type, func.count(LessonModel.id))
                .group_by(LessonModel.task_type)
                .order_by(func.count(LessonModel.id).desc())
                .limit(10)
            )
            top_task_types = [{"task_type": t, "count": c} for t, c in result.all()]

        total = total or 0
        successful = successful or 0
        return {
            "total_lessons": total,
            "successful_lessons": successful,
            "failed_lessons": total - successful,
            "avg_relevance_score": round(avg_relevance or 0.0, 3),
            "total_times_applied": applied or 0,
            "total_tasks": tasks or 0,
            "top_task_types": top_task_types,
        }


def create_knowledge_base(database: Database) -> KnowledgeBase:
    """Create a KnowledgeBase over an initialized database."""
    return KnowledgeBase(database)
