"""
Tests for the Knowledge Base
============================

Tests for knowledge.py - error normalization, lesson storage and
retrieval, relevance scoring and task history.
"""

import pytest
from sqlalchemy import update

from execguard.db import LessonModel
from execguard.knowledge import (
    MAX_HISTORY_FIELD_LENGTH,
    Lesson,
    LessonQuery,
    TaskHistoryEntry,
    extract_error_pattern,
    extract_keywords,
)


def make_lesson(**kwargs) -> Lesson:
    defaults = {
        "task_type": "command_execution",
        "task_description": "Run the build",
        "lesson_summary": "Build needs node 18",
    }
    defaults.update(kwargs)
    return Lesson(**defaults)


async def set_relevance(knowledge_base, lesson_id, score):
    async with knowledge_base.database.session_maker() as session:
        await session.execute(
            update(LessonModel).where(LessonModel.id == lesson_id).values(relevance_score=score)
        )
        await session.commit()


# =============================================================================
# Error Pattern Extraction
# =============================================================================

class TestExtractErrorPattern:
    """Tests for extract_error_pattern()."""

    def test_path_line_col_date(self):
        pattern = extract_error_pattern("Error at /home/user/app/file.js:42:10 on 2024-01-01")
        assert pattern == "Error at <PATH>:<LINE>:<COL> on <DATE>"

    def test_windows_path(self):
        pattern = extract_error_pattern("Cannot find C:\\Users\\me\\app.js")
        assert pattern == "Cannot find <PATH>"

    def test_time_hex_and_long_numbers(self):
        pattern = extract_error_pattern("Segfault at 0x7ffe12 pid 123456 at 12:30:45")
        assert pattern == "Segfault at <HEX> pid <NUM> at <TIME>"

    def test_short_numbers_kept(self):
        assert extract_error_pattern("exit code 1234") == "exit code 1234"

    def test_same_pattern_for_different_locations(self):
        a = extract_error_pattern("Error at /home/user/app/file.js:42:10 on 2024-01-01")
        b = extract_error_pattern("Error at /srv/other/file.js:7:3 on 2025-06-30")
        assert a == b

    def test_truncated(self):
        assert len(extract_error_pattern("x" * 300)) == 200

    def test_stripped(self):
        assert extract_error_pattern("  boom  ") == "boom"


class TestExtractKeywords:
    """Tests for extract_keywords()."""

    def test_drops_stop_words_and_short_words(self):
        keywords = extract_keywords("The module 'lodash' cannot be found in /usr/lib")
        assert keywords == ["module", "lodash", "found", "usr", "lib"]

    def test_at_most_ten(self):
        text = " ".join(f"word{i}" for i in range(20))
        assert len(extract_keywords(text)) == 10

    def test_only_noise(self):
        assert extract_keywords("error: failed to") == []


# =============================================================================
# Lessons
# =============================================================================

class TestLessons:
    """Tests for saving and querying lessons."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, knowledge_base):
        lesson_id = await knowledge_base.save_lesson(make_lesson(
            error_message="Error at /home/user/app/file.js:42:10 on 2024-01-01",
            tags=["build", "node"],
        ))
        assert lesson_id > 0

        lesson = await knowledge_base.get_lesson(lesson_id)
        assert lesson.id == lesson_id
        assert lesson.error_pattern == "Error at <PATH>:<LINE>:<COL> on <DATE>"
        assert lesson.tags == ["build", "node"]
        assert lesson.relevance_score == 1.0
        assert lesson.times_applied == 0
        assert lesson.created_at is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, knowledge_base):
        assert await knowledge_base.get_lesson(999) is None

    @pytest.mark.asyncio
    async def test_summary_required(self, knowledge_base):
        with pytest.raises(ValueError):
            await knowledge_base.save_lesson(make_lesson(lesson_summary="  "))

    @pytest.mark.asyncio
    async def test_attempts_must_be_positive(self, knowledge_base):
        with pytest.raises(ValueError):
            await knowledge_base.save_lesson(make_lesson(attempts_before_success=0))

    @pytest.mark.asyncio
    async def test_query_filters(self, knowledge_base):
        await knowledge_base.save_lesson(make_lesson(task_type="build", category="npm", success=True))
        await knowledge_base.save_lesson(make_lesson(task_type="build", category="pip", success=False))
        await knowledge_base.save_lesson(make_lesson(task_type="deploy", success=True))

        assert len(await knowledge_base.query_lessons(LessonQuery(task_type="build"))) == 2
        assert len(await knowledge_base.query_lessons(LessonQuery(category="pip"))) == 1
        assert len(await knowledge_base.query_lessons(LessonQuery(success_only=True))) == 2
        assert len(await knowledge_base.query_lessons(LessonQuery(failure_only=True))) == 1
        assert len(await knowledge_base.query_lessons(LessonQuery(limit=2))) == 2
        assert len(await knowledge_base.query_lessons()) == 3

    @pytest.mark.asyncio
    async def test_query_error_pattern_substring(self, knowledge_base):
        await knowledge_base.save_lesson(make_lesson(error_message="npm ERR! code ENOENT"))
        await knowledge_base.save_lesson(make_lesson(error_message="100% of disk used"))

        found = await knowledge_base.query_lessons(LessonQuery(error_pattern="ENOENT"))
        assert len(found) == 1
        # LIKE wildcards in the filter are literal
        found = await knowledge_base.query_lessons(LessonQuery(error_pattern="100%"))
        assert len(found) == 1

    @pytest.mark.asyncio
    async def test_query_ordering(self, knowledge_base):
        first = await knowledge_base.save_lesson(make_lesson(lesson_summary="first"))
        second = await knowledge_base.save_lesson(make_lesson(lesson_summary="second"))
        third = await knowledge_base.save_lesson(make_lesson(lesson_summary="third"))

        await knowledge_base.mark_lesson_applied(second)

        lessons = await knowledge_base.query_lessons()
        assert [lesson.id for lesson in lessons] == [second, third, first]

    @pytest.mark.asyncio
    async def test_min_relevance(self, knowledge_base):
        keep = await knowledge_base.save_lesson(make_lesson())
        stale = await knowledge_base.save_lesson(make_lesson())
        await set_relevance(knowledge_base, stale, 0.2)

        lessons = await knowledge_base.get_lessons_for_task_type("command_execution")
        assert [lesson.id for lesson in lessons] == [keep]

    @pytest.mark.asyncio
    async def test_recent_lessons(self, knowledge_base):
        ids = [await knowledge_base.save_lesson(make_lesson()) for _ in range(4)]
        recent = await knowledge_base.get_recent_lessons(limit=2)
        assert [lesson.id for lesson in recent] == [ids[3], ids[2]]


# =============================================================================
# Retrieval
# =============================================================================

class TestRetrieval:
    """Tests for find_lessons_for_error() and search_lessons()."""

    @pytest.mark.asyncio
    async def test_exact_pattern_match(self, knowledge_base):
        lesson_id = await knowledge_base.save_lesson(make_lesson(
            success=True,
            error_message="Error at /home/user/app/file.js:42:10 on 2024-01-01",
            solution="Rebuild native modules",
        ))

        found = await knowledge_base.find_lessons_for_error(
            "Error at /srv/other/file.js:7:3 on 2025-06-30"
        )
        assert [lesson.id for lesson in found] == [lesson_id]

    @pytest.mark.asyncio
    async def test_keyword_fallback(self, knowledge_base):
        lesson_id = await knowledge_base.save_lesson(make_lesson(
            success=False,
            error_message="ModuleNotFoundError: No module named requests",
        ))

        found = await knowledge_base.find_lessons_for_error("module requests missing")
        assert [lesson.id for lesson in found] == [lesson_id]

    @pytest.mark.asyncio
    async def test_nothing_to_search(self, knowledge_base):
        await knowledge_base.save_lesson(make_lesson(error_message="something broke"))
        assert await knowledge_base.find_lessons_for_error("error failed") == []

    @pytest.mark.asyncio
    async def test_search_lessons(self, knowledge_base):
        lesson_id = await knowledge_base.save_lesson(make_lesson(
            lesson_summary="Webpack needs the legacy OpenSSL provider",
        ))
        await knowledge_base.save_lesson(make_lesson(lesson_summary="Unrelated"))

        found = await knowledge_base.search_lessons("openssl")
        assert [lesson.id for lesson in found] == [lesson_id]


# =============================================================================
# Relevance Scoring
# =============================================================================

class TestRelevance:
    """Tests for mark_lesson_applied() and decay_relevance_scores()."""

    @pytest.mark.asyncio
    async def test_mark_applied(self, knowledge_base):
        lesson_id = await knowledge_base.save_lesson(make_lesson())

        assert await knowledge_base.mark_lesson_applied(lesson_id) is True

        lesson = await knowledge_base.get_lesson(lesson_id)
        assert lesson.relevance_score == pytest.approx(1.1)
        assert lesson.times_applied == 1
        assert lesson.last_applied_at is not None

    @pytest.mark.asyncio
    async def test_mark_applied_missing(self, knowledge_base):
        assert await knowledge_base.mark_lesson_applied(12345) is False

    @pytest.mark.asyncio
    async def test_relevance_capped(self, knowledge_base):
        lesson_id = await knowledge_base.save_lesson(make_lesson())
        await set_relevance(knowledge_base, lesson_id, 9.5)

        await knowledge_base.mark_lesson_applied(lesson_id)
        await knowledge_base.mark_lesson_applied(lesson_id)

        lesson = await knowledge_base.get_lesson(lesson_id)
        assert lesson.relevance_score == pytest.approx(10.0)
        assert lesson.times_applied == 2

    @pytest.mark.asyncio
    async def test_decay(self, knowledge_base):
        fresh = await knowledge_base.save_lesson(make_lesson())
        floor = await knowledge_base.save_lesson(make_lesson())
        await set_relevance(knowledge_base, floor, 0.05)

        assert await knowledge_base.decay_relevance_scores(0.5) == 1

        assert (await knowledge_base.get_lesson(fresh)).relevance_score == pytest.approx(0.5)
        assert (await knowledge_base.get_lesson(floor)).relevance_score == pytest.approx(0.05)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("factor", [0, -0.5, 1.5])
    async def test_decay_factor_range(self, knowledge_base, factor):
        with pytest.raises(ValueError):
            await knowledge_base.decay_relevance_scores(factor)


# =============================================================================
# Task History
# =============================================================================

class TestTaskHistory:
    """Tests for log_task_execution() and get_task_history()."""

    @pytest.mark.asyncio
    async def test_log_and_read(self, knowledge_base):
        entry_id = await knowledge_base.log_task_execution(TaskHistoryEntry(
            task_id="TASK-1",
            task_type="command_execution",
            task_description="ls",
            status="completed",
            risk_level="GREEN",
            output="file.txt",
            duration_ms=3,
        ))
        assert entry_id > 0

        history = await knowledge_base.get_task_history()
        assert len(history) == 1
        assert history[0].task_id == "TASK-1"
        assert history[0].status == "completed"
        assert history[0].started_at is not None

    @pytest.mark.asyncio
    async def test_truncates_output(self, knowledge_base):
        await knowledge_base.log_task_execution(TaskHistoryEntry(
            task_id="TASK-2",
            task_type="command_execution",
            task_description="cat big.log",
            status="failed",
            output="o" * 20_000,
            error_output="e" * 20_000,
        ))

        entry = (await knowledge_base.get_task_history())[0]
        assert len(entry.output) == MAX_HISTORY_FIELD_LENGTH
        assert len(entry.error_output) == MAX_HISTORY_FIELD_LENGTH

    @pytest.mark.asyncio
    async def test_invalid_status(self, knowledge_base):
        with pytest.raises(ValueError):
            await knowledge_base.log_task_execution(TaskHistoryEntry(
                task_id="TASK-3",
                task_type="command_execution",
                task_description="ls",
                status="exploded",
            ))

    @pytest.mark.asyncio
    async def test_newest_first_and_status_filter(self, knowledge_base):
        for i, status in enumerate(["completed", "failed", "completed"]):
            await knowledge_base.log_task_execution(TaskHistoryEntry(
                task_id=f"TASK-{i}",
                task_type="command_execution",
                task_description="cmd",
                status=status,
            ))

        history = await knowledge_base.get_task_history()
        assert [entry.task_id for entry in history] == ["TASK-2", "TASK-1", "TASK-0"]

        failed = await knowledge_base.get_task_history(status="failed")
        assert [entry.task_id for entry in failed] == ["TASK-1"]


# =============================================================================
# Statistics
# =============================================================================

class TestStats:
    """Tests for get_stats()."""

    @pytest.mark.asyncio
    async def test_empty(self, knowledge_base):
        stats = await knowledge_base.get_stats()
        assert stats["total_lessons"] == 0
        assert stats["avg_relevance_score"] == 0.0
        assert stats["top_task_types"] == []

    @pytest.mark.asyncio
    async def test_counts(self, knowledge_base):
        applied = await knowledge_base.save_lesson(make_lesson(success=True))
        await knowledge_base.save_lesson(make_lesson(success=False))
        await knowledge_base.save_lesson(make_lesson(task_type="deploy", success=False))
        await knowledge_base.mark_lesson_applied(applied)
        await knowledge_base.log_task_execution(TaskHistoryEntry(
            task_id="TASK-1",
            task_type="command_execution",
            task_description="ls",
            status="completed",
        ))

        stats = await knowledge_base.get_stats()
        assert stats["total_lessons"] == 3
        assert stats["successful_lessons"] == 1
        assert stats["failed_lessons"] == 2
        assert stats["total_times_applied"] == 1
        assert stats["total_tasks"] == 1
        assert stats["top_task_types"][0] == {"task_type": "command_execution", "count": 2}
