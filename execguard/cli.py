#!/usr/bin/env python3
"""
execguard CLI
=============

Command-line front-end for the execution guard, the approval queue and the
knowledge base.

Usage:
    # Show how a command would be classified
    execguard classify "git push --force"

    # Run a command through the guard
    execguard exec -- ls -la

    # Answer RED approval requests from another terminal
    execguard pending
    execguard approve APR-1A2B3C4D5E6F
    execguard deny APR-1A2B3C4D5E6F

    # Browse lessons
    execguard lessons --failure-only --limit 10
    execguard find-error "ENOENT: no such file or directory"
    execguard stats
"""

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from rich.markup import escape
from sqlalchemy.exc import OperationalError

from execguard.action_log import ActionLog
from execguard.approval import AutoApproveChannel, DatabaseApprovalChannel
from execguard.classifier import ClassificationResult, CommandClassifier
from execguard.config import GuardConfig
from execguard.db import Database, init_db
from execguard.errors import GuardError, UnknownApprovalError
from execguard.guard import GuardResult, create_execution_guard
from execguard.knowledge import KnowledgeBase, Lesson, LessonQuery
from execguard.output import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_panel,
    print_success,
    print_table,
    print_warning,
    setup_rich_logging,
    tier_icon,
    tier_style,
)
from execguard.policy import load_policy


# =============================================================================
# Helpers
# =============================================================================

def _load_config(args) -> GuardConfig:
    config = GuardConfig.load()
    if args.policy:
        config.policy_path = args.policy
    if args.data_dir:
        config.data_dir = args.data_dir
    return config


@asynccontextmanager
async def _open_database(config: GuardConfig) -> AsyncIterator[Database]:
    database = await init_db(config.db_path)
    try:
        yield database
    finally:
        await database.dispose()


async def _console_notifier(message: str) -> None:
    print_panel(escape(message), title="execguard", border_style="eg.warn")


def _print_classification(result: ClassificationResult) -> None:
    style = tier_style(result.level.value)
    console.print(f"[{style}]{tier_icon(result.level.value)} {result.level.value}[/] {escape(result.command)}")
    print_key_value_table({
        "Reason": result.reason,
        "Matched pattern": result.matched_pattern,
        "Requires approval": result.requires_approval,
        "Auto execute": result.auto_execute,
        "Notify channel": result.log_to_channel,
    })


def _print_result(result: GuardResult) -> None:
    level = result.classification.level.value
    border = "eg.ok" if result.success else "eg.err"
    title = f"{level} - {result.status.value.upper()}"
    print_panel(escape(result.output.rstrip() or "(no output)"), title=title, border_style=border)

    if result.lesson_id:
        print_muted(f"Recorded lesson #{result.lesson_id}")
    if result.suggestions:
        print_info("Lessons from similar errors:")
        for suggestion in result.suggestions:
            console.print(f"  [eg.muted]-[/] {escape(suggestion)}")


def _lessons_table(lessons: list[Lesson], title: str) -> None:
    if not lessons:
        print_muted("No lessons found")
        return

    table = create_table(
        title=title,
        columns=["ID", "Type", "Category", "Outcome", "Relevance", "Applied", "Summary"],
    )
    for lesson in lessons:
        outcome = "[eg.ok]success[/]" if lesson.success else "[eg.err]failure[/]"
        table.add_row(
            str(lesson.id),
            escape(lesson.task_type),
            escape(lesson.category or "-"),
            outcome,
            f"{lesson.relevance_score:.2f}",
            str(lesson.times_applied),
            escape(lesson.lesson_summary[:80]),
        )
    print_table(table)


# =============================================================================
# Commands
# =============================================================================

def cmd_classify(args) -> int:
    """Classify a command without running it."""
    config = _load_config(args)
    classifier = CommandClassifier(load_policy(config.policy_path))
    _print_classification(classifier.classify(" ".join(args.cmd)))
    return 0


def cmd_exec(args) -> int:
    """Run a command through the guard."""
    return asyncio.run(_exec(args))


async def _exec(args) -> int:
    config = _load_config(args)
    classifier = CommandClassifier(load_policy(config.policy_path))

    async with _open_database(config) as database:
        if args.auto_approve or config.approval_mode == "auto":
            channel = AutoApproveChannel(notifier=_console_notifier)
        else:
            channel = DatabaseApprovalChannel(
                database,
                poll_interval=config.approval_poll_interval,
                notifier=_console_notifier,
            )

        guard = create_execution_guard(
            classifier,
            channel,
            knowledge_base=KnowledgeBase(database),
            log_dir=config.log_dir,
            exec_timeout_seconds=config.exec_timeout_seconds,
            max_output_bytes=config.max_output_bytes,
        )
        result = await guard.execute(" ".join(args.cmd), working_directory=args.cwd)

    if args.json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _print_result(result)
    return 0 if result.success else 1


def cmd_pending(args) -> int:
    """List approval requests waiting for a decision."""
    return asyncio.run(_pending(args))


async def _pending(args) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        requests = await DatabaseApprovalChannel(database).get_pending()

    if not requests:
        print_muted("No pending approvals")
        return 0

    table = create_table(title="Pending Approvals", columns=["ID", "Requested", "Timeout", "Command"])
    for request in requests:
        table.add_row(
            request.id,
            request.requested_at[:19],
            f"{request.timeout_seconds:g}s",
            escape(request.command),
        )
    print_table(table)
    return 0


def cmd_approve(args) -> int:
    return asyncio.run(_respond(args, approved=True))


def cmd_deny(args) -> int:
    return asyncio.run(_respond(args, approved=False))


async def _respond(args, approved: bool) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        channel = DatabaseApprovalChannel(database)
        try:
            changed = await channel.respond(args.approval_id, approved, responder=args.responder)
        except UnknownApprovalError as e:
            print_error(str(e))
            return 1
        request = await channel.get_request(args.approval_id)

    if not changed:
        print_warning(f"{args.approval_id} is no longer pending (status: {request.status})")
        return 1

    verb = "Approved" if approved else "Denied"
    print_success(f"{verb} {args.approval_id}: {escape(request.command)}")
    return 0


def cmd_lessons(args) -> int:
    """Query lessons."""
    return asyncio.run(_lessons(args))


async def _lessons(args) -> int:
    config = _load_config(args)
    query = LessonQuery(
        task_type=args.task_type,
        category=args.category,
        error_pattern=args.error_pattern,
        success_only=args.success_only,
        failure_only=args.failure_only,
        min_relevance=args.min_relevance,
        limit=args.limit,
    )
    async with _open_database(config) as database:
        lessons = await KnowledgeBase(database).query_lessons(query)
    _lessons_table(lessons, "Lessons")
    return 0


def cmd_search(args) -> int:
    """Full-text search over lessons."""
    return asyncio.run(_search(args))


async def _search(args) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        try:
            lessons = await KnowledgeBase(database).search_lessons(args.text, limit=args.limit)
        except OperationalError as e:
            print_error(f"Invalid search query: {e.orig}")
            return 1
    _lessons_table(lessons, f"Search: {escape(args.text)}")
    return 0


def cmd_find_error(args) -> int:
    """Find lessons relevant to an error message."""
    return asyncio.run(_find_error(args))


async def _find_error(args) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        lessons = await KnowledgeBase(database).find_lessons_for_error(args.message, limit=args.limit)
    _lessons_table(lessons, "Lessons for error")
    return 0


def cmd_applied(args) -> int:
    """Mark a lesson as applied."""
    return asyncio.run(_applied(args))


async def _applied(args) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        kb = KnowledgeBase(database)
        found = await kb.mark_lesson_applied(args.lesson_id)
        lesson = await kb.get_lesson(args.lesson_id) if found else None

    if lesson is None:
        print_error(f"Lesson {args.lesson_id} not found")
        return 1
    print_success(
        f"Lesson {lesson.id} applied {lesson.times_applied}x, relevance {lesson.relevance_score:.2f}"
    )
    return 0


def cmd_stats(args) -> int:
    """Show knowledge base statistics."""
    return asyncio.run(_stats(args))


async def _stats(args) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        stats = await KnowledgeBase(database).get_stats()

    print_header("Knowledge Base")
    print_key_value_table({
        "Total lessons": stats["total_lessons"],
        "Successful": stats["successful_lessons"],
        "Failed": stats["failed_lessons"],
        "Avg relevance": stats["avg_relevance_score"],
        "Times applied": stats["total_times_applied"],
        "Task history entries": stats["total_tasks"],
    })

    if stats["top_task_types"]:
        table = create_table(title="Top Task Types", columns=["Task type", "Lessons"])
        for row in stats["top_task_types"]:
            table.add_row(escape(row["task_type"]), str(row["count"]))
        print_table(table)
    return 0


def cmd_decay(args) -> int:
    """Decay lesson relevance scores."""
    return asyncio.run(_decay(args))


async def _decay(args) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        count = await KnowledgeBase(database).decay_relevance_scores(args.factor)
    print_success(f"Decayed {count} lessons by factor {args.factor}")
    return 0


def cmd_history(args) -> int:
    """Show recent task history."""
    return asyncio.run(_history(args))


async def _history(args) -> int:
    config = _load_config(args)
    async with _open_database(config) as database:
        entries = await KnowledgeBase(database).get_task_history(limit=args.limit, status=args.status)

    if not entries:
        print_muted("No task history")
        return 0

    table = create_table(title="Task History", columns=["ID", "Status", "Tier", "Duration", "Lesson", "Command"])
    status_styles = {"completed": "eg.ok", "failed": "eg.err", "blocked": "eg.warn"}
    for entry in entries:
        style = status_styles.get(entry.status, "eg.muted")
        table.add_row(
            str(entry.id),
            f"[{style}]{entry.status}[/]",
            entry.risk_level or "-",
            f"{entry.duration_ms}ms" if entry.duration_ms is not None else "-",
            str(entry.lesson_id) if entry.lesson_id else "-",
            escape(entry.task_description[:80]),
        )
    print_table(table)
    return 0


def cmd_log(args) -> int:
    """Show action log entries for a day."""
    config = _load_config(args)
    day: Optional[date] = None
    if args.date:
        try:
            day = date.fromisoformat(args.date)
        except ValueError:
            print_error(f"Invalid date: {args.date} (expected YYYY-MM-DD)")
            return 1

    action_log = ActionLog(config.log_dir)
    entries = action_log.read(day)
    if not entries:
        print_muted(f"No entries in {action_log.path_for(day)}")
        return 0

    table = create_table(title=action_log.path_for(day).name, columns=["Time", "Tier", "Approved", "Command", "Result"])
    for entry in entries:
        level = entry.get("level", "")
        table.add_row(
            entry.get("timestamp", "")[11:19],
            f"[{tier_style(level)}]{level}[/]",
            "yes" if entry.get("approved") else "no",
            escape(entry.get("command", "")),
            escape(entry.get("result", "")[:60]),
        )
    print_table(table)
    return 0


def cmd_status(args) -> int:
    """Show the effective configuration and policy."""
    config = _load_config(args)
    policy = load_policy(config.policy_path)
    print_key_value_table({
        "Policy": policy.source,
        "Approval mode": config.approval_mode,
        "Approval timeout": f"{policy.approval_timeout}s",
        "Exec timeout": f"{config.exec_timeout_seconds}s",
        "Max output": f"{config.max_output_bytes} bytes",
        "Knowledge base": config.db_path,
        "Action log": config.log_dir,
        "Blacklist": f"{len(policy.blacklist_patterns)} patterns, {len(policy.blacklist_executables)} executables",
        "Tier patterns": (
            f"red {len(policy.red_patterns)}, yellow {len(policy.yellow_patterns)}, "
            f"green {len(policy.green_patterns)}"
        ),
    }, title="execguard")
    return 0


# =============================================================================
# Entry Point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="execguard",
        description="Risk-tiered shell command guard with approvals and lessons learned",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--policy", type=Path, help="Guard policy JSON (default: packaged policy)")
    parser.add_argument("--data-dir", type=Path, help="Data directory (default: .execguard)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    classify_parser = subparsers.add_parser("classify", help="Classify a command without running it")
    classify_parser.add_argument("cmd", nargs="+", help="Command to classify")

    exec_parser = subparsers.add_parser("exec", help="Run a command through the guard")
    exec_parser.add_argument("cmd", nargs="+", help="Command to run")
    exec_parser.add_argument("--cwd", type=Path, help="Working directory")
    exec_parser.add_argument("--auto-approve", action="store_true", help="Approve RED commands automatically")
    exec_parser.add_argument("--json", action="store_true", help="Print the result as JSON")

    subparsers.add_parser("pending", help="List pending approval requests")

    approve_parser = subparsers.add_parser("approve", help="Approve a pending request")
    approve_parser.add_argument("approval_id", help="Approval request ID")
    approve_parser.add_argument("--responder", default="human", help="Name recorded with the decision")

    deny_parser = subparsers.add_parser("deny", help="Deny a pending request")
    deny_parser.add_argument("approval_id", help="Approval request ID")
    deny_parser.add_argument("--responder", default="human", help="Name recorded with the decision")

    lessons_parser = subparsers.add_parser("lessons", help="Query lessons")
    lessons_parser.add_argument("--task-type", help="Filter by task type")
    lessons_parser.add_argument("--category", help="Filter by category")
    lessons_parser.add_argument("--error-pattern", help="Filter by error pattern substring")
    outcome = lessons_parser.add_mutually_exclusive_group()
    outcome.add_argument("--success-only", action="store_true", help="Only successful lessons")
    outcome.add_argument("--failure-only", action="store_true", help="Only failed lessons")
    lessons_parser.add_argument("--min-relevance", type=float, help="Minimum relevance score")
    lessons_parser.add_argument("--limit", "-n", type=int, default=20, help="Max lessons to show")

    search_parser = subparsers.add_parser("search", help="Full-text search over lessons")
    search_parser.add_argument("text", help="FTS5 query")
    search_parser.add_argument("--limit", "-n", type=int, default=10, help="Max lessons to show")

    find_parser = subparsers.add_parser("find-error", help="Find lessons for an error message")
    find_parser.add_argument("message", help="Error message")
    find_parser.add_argument("--limit", "-n", type=int, default=5, help="Max lessons to show")

    applied_parser = subparsers.add_parser("applied", help="Mark a lesson as applied")
    applied_parser.add_argument("lesson_id", type=int, help="Lesson ID")

    subparsers.add_parser("stats", help="Knowledge base statistics")

    decay_parser = subparsers.add_parser("decay", help="Decay lesson relevance scores")
    decay_parser.add_argument("--factor", type=float, default=0.99, help="Multiplier (default: 0.99)")

    history_parser = subparsers.add_parser("history", help="Show recent task history")
    history_parser.add_argument("--status", choices=["started", "completed", "failed", "blocked"])
    history_parser.add_argument("--limit", "-n", type=int, default=20, help="Max entries to show")

    log_parser = subparsers.add_parser("log", help="Show action log entries")
    log_parser.add_argument("--date", help="Day to show, YYYY-MM-DD (default: today, UTC)")

    subparsers.add_parser("status", help="Show configuration and policy summary")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "classify": cmd_classify,
        "exec": cmd_exec,
        "pending": cmd_pending,
        "approve": cmd_approve,
        "deny": cmd_deny,
        "lessons": cmd_lessons,
        "search": cmd_search,
        "find-error": cmd_find_error,
        "applied": cmd_applied,
        "stats": cmd_stats,
        "decay": cmd_decay,
        "history": cmd_history,
        "log": cmd_log,
        "status": cmd_status,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except GuardError as e:
        print_error(str(e))
        return 2
    except ValueError as e:
        print_error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
