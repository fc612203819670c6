"""
Execution Guard
===============

Runs shell commands behind the risk classifier.

    classify --BLACKLISTED--> blocked (never executed)
             --RED----------> await approval --approved--> run
                                              --denied/timeout--> refused
             --YELLOW-------> log to approval channel --> run
             --GREEN--------> run

Every outcome is appended to the daily action log and to the knowledge
base's task history. A failed run also records a lesson.

The guard never raises for guarded failures: blocked, refused and failed
commands all come back as a GuardResult with success=False. Only bad
arguments (and configuration errors at construction time) raise.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from execguard.action_log import ActionLog
from execguard.approval import ApprovalChannel, ApprovalOutcome
from execguard.classifier import ClassificationResult, CommandClassifier, RiskTier
from execguard.errors import (
    ApprovalDenied,
    ApprovalTimeout,
    BlockedCommand,
    GuardError,
    SubprocessError,
)
from execguard.executor import SubprocessExecutor
from execguard.knowledge import KnowledgeBase, Lesson, TaskHistoryEntry

if TYPE_CHECKING:
    from execguard.planner import Planner


logger = logging.getLogger(__name__)

# Extra time granted to a channel to report its own timeout before the guard
# stops waiting on it.
APPROVAL_GRACE_SECONDS = 1.0
YELLOW_EXCERPT_LENGTH = 200
TASK_TYPE = "command_execution"


class GuardStatus(str, Enum):
    """How a guarded command ended."""
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    DENIED = "denied"
    TIMEOUT = "timeout"


@dataclass
class GuardResult:
    """Outcome of ExecutionGuard.execute()."""

    success: bool
    output: str
    classification: ClassificationResult
    status: GuardStatus
    task_id: Optional[str] = None
    approval_id: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: Optional[int] = None
    lesson_id: Optional[int] = None
    suggestions: list[str] = field(default_factory=list)
    error: Optional[GuardError] = field(default=None, repr=False, compare=False)

    def raise_for_status(self) -> None:
        """Raise the matching GuardError if the command did not complete."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "output": self.output,
            "status": self.status.value,
            "classification": self.classification.to_dict(),
            "task_id": self.task_id,
            "approval_id": self.approval_id,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "lesson_id": self.lesson_id,
            "suggestions": list(self.suggestions),
        }


def _command_category(command: str) -> Optional[str]:
    parts = command.split()
    if not parts:
        return None
    return Path(parts[0].strip("\"'")).name.lower() or None


class ExecutionGuard:
    """
    Classify, gate, run and record shell commands.

    Collaborators are injected; the knowledge base is optional (no lessons
    or task history without it).
    """

    def __init__(
        self,
        classifier: CommandClassifier,
        approval_channel: ApprovalChannel,
        knowledge_base: Optional[KnowledgeBase] = None,
        action_log: Optional[ActionLog] = None,
        executor: Optional[SubprocessExecutor] = None,
    ):
        self.classifier = classifier
        self.approval_channel = approval_channel
        self.knowledge_base = knowledge_base
        self.action_log = action_log
        self.executor = executor or SubprocessExecutor()

    def classify(self, command: str) -> ClassificationResult:
        return self.classifier.classify(command)

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(
        self,
        command: str,
        working_directory: Optional[Union[str, Path]] = None,
    ) -> GuardResult:
        """
        Run a command through the guard.

        Args:
            command: Shell command
            working_directory: Directory to run in (default: current)

        Returns:
            GuardResult; success is False for blocked, refused or failed commands
        """
        classification = self.classifier.classify(command)
        command = classification.command
        if not command:
            raise ValueError("command must not be empty")

        task_id = f"cmd-{uuid.uuid4().hex[:12]}"
        level = classification.level
        logger.info("[%s] %s (%s)", level.value, command, classification.reason)

        if level == RiskTier.BLACKLISTED:
            return await self._block(classification, task_id)

        approval_id = None
        if level == RiskTier.RED:
            approval_id, refusal = await self._await_approval(classification, task_id)
            if refusal is not None:
                return refusal
            await self._best_effort(
                self.approval_channel.log_command(command, level.value, "Approved and executing..."),
                "log_command",
            )
        elif level == RiskTier.YELLOW:
            await self._best_effort(
                self.approval_channel.log_command(command, level.value),
                "log_command",
            )

        return await self._run(classification, task_id, working_directory, approval_id)

    async def execute_plan_step(
        self,
        planner: "Planner",
        step_id: int,
        working_directory: Optional[Union[str, Path]] = None,
    ) -> GuardResult:
        """
        Execute the `command` argument of a plan step and record the outcome
        on the step.
        """
        step = planner.get_step(step_id)
        if step is None:
            raise ValueError(f"Unknown plan step: {step_id}")
        command = (step.args or {}).get("command")
        if not command:
            raise ValueError(f"Plan step {step_id} has no command")
        if planner.start_step(step_id) is None:
            raise ValueError(f"Plan step {step_id} has unfinished dependencies")

        result = await self.execute(command, working_directory)
        if result.success:
            planner.complete_step(step_id, result.output[:500])
        else:
            await planner.fail_step(step_id, result.output)
        return result

    def status(self) -> dict[str, Any]:
        """Summary of the guard's configuration."""
        policy = self.classifier.policy
        return {
            "policy": policy.source or "<in-memory>",
            "approval_timeout": policy.approval_timeout,
            "approval_channel": type(self.approval_channel).__name__,
            "blacklist_patterns": len(policy.blacklist_patterns),
            "blacklist_executables": len(policy.blacklist_executables),
            "red_patterns": len(policy.red_patterns),
            "yellow_patterns": len(policy.yellow_patterns),
            "green_patterns": len(policy.green_patterns),
            "log_dir": str(self.action_log.log_dir) if self.action_log else None,
            "knowledge_base": str(self.knowledge_base.database.path) if self.knowledge_base else None,
            "exec_timeout": self.executor.timeout_seconds,
            "max_output_bytes": self.executor.max_output_bytes,
        }

    # =========================================================================
    # Tier handling
    # =========================================================================

    async def _block(self, classification: ClassificationResult, task_id: str) -> GuardResult:
        command = classification.command
        await self._best_effort(
            self.approval_channel.notify_blocked(command, classification.reason),
            "notify_blocked",
        )
        output = f"BLOCKED: {classification.reason}"
        self._log_action(classification, output, approved=False)
        await self._record_history(task_id, classification, "blocked", error_output=output)
        return GuardResult(
            success=False,
            output=output,
            classification=classification,
            status=GuardStatus.BLOCKED,
            task_id=task_id,
            error=BlockedCommand(command, classification.reason),
        )

    async def _await_approval(
        self, classification: ClassificationResult, task_id: str
    ) -> tuple[Optional[str], Optional[GuardResult]]:
        """Returns (approval_id, None) when approved, else (approval_id, refusal)."""
        command = classification.command
        timeout = self.classifier.approval_timeout

        try:
            approval_id = await self.approval_channel.request_approval(
                command, classification.reason, timeout
            )
        except Exception as e:
            logger.error("Approval request failed for %s: %s", command, e)
            return None, await self._refuse(
                classification, task_id, None,
                GuardStatus.DENIED,
                log_result=f"Approval request failed: {e}",
                output=f"Command denied - approval request failed: {e}",
            )

        try:
            outcome = await asyncio.wait_for(
                self.approval_channel.wait_for_approval(approval_id, timeout),
                timeout=timeout + APPROVAL_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            outcome = ApprovalOutcome.TIMEOUT
        except Exception as e:
            logger.error("Waiting for approval %s failed: %s", approval_id, e)
            outcome = ApprovalOutcome.DENIED

        if outcome == ApprovalOutcome.APPROVED:
            logger.info("Approval %s granted for %s", approval_id, command)
            return approval_id, None

        if outcome == ApprovalOutcome.TIMEOUT:
            logger.warning("Approval %s timed out after %ss", approval_id, timeout)
            return approval_id, await self._refuse(
                classification, task_id, approval_id,
                GuardStatus.TIMEOUT,
                log_result="Approval timeout",
                output="Command timed out - approval not granted",
            )

        logger.warning("Approval %s denied for %s", approval_id, command)
        return approval_id, await self._refuse(
            classification, task_id, approval_id,
            GuardStatus.DENIED,
            log_result="Approval denied",
            output="Command denied - approval not granted",
        )

    async def _refuse(
        self,
        classification: ClassificationResult,
        task_id: str,
        approval_id: Optional[str],
        status: GuardStatus,
        log_result: str,
        output: str,
    ) -> GuardResult:
        command = classification.command
        self._log_action(classification, log_result, approved=False)
        await self._record_history(task_id, classification, "blocked", error_output=output)

        if status == GuardStatus.TIMEOUT:
            error: GuardError = ApprovalTimeout(command, self.classifier.approval_timeout, approval_id)
        else:
            error = ApprovalDenied(command, approval_id)

        return GuardResult(
            success=False,
            output=output,
            classification=classification,
            status=status,
            task_id=task_id,
            approval_id=approval_id,
            error=error,
        )

    async def _run(
        self,
        classification: ClassificationResult,
        task_id: str,
        working_directory: Optional[Union[str, Path]],
        approval_id: Optional[str],
    ) -> GuardResult:
        command = classification.command
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()

        try:
            result = await self.executor.run(command, working_directory)
        except SubprocessError as e:
            return await self._failed(classification, task_id, approval_id, e, started_at, start)
        except Exception as e:
            logger.exception("Executor raised unexpectedly for %s", command)
            return await self._failed(
                classification, task_id, approval_id, SubprocessError(str(e)), started_at, start
            )

        output = result.text
        self._log_action(classification, output, approved=True)

        if classification.level == RiskTier.YELLOW:
            await self._best_effort(
                self.approval_channel.log_command(
                    command, classification.level.value, output[:YELLOW_EXCERPT_LENGTH]
                ),
                "log_command",
            )

        await self._record_history(
            task_id, classification, "completed",
            started_at=started_at,
            duration_ms=result.duration_ms,
            output=output,
        )
        return GuardResult(
            success=True,
            output=output,
            classification=classification,
            status=GuardStatus.COMPLETED,
            task_id=task_id,
            approval_id=approval_id,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )

    async def _failed(
        self,
        classification: ClassificationResult,
        task_id: str,
        approval_id: Optional[str],
        error: SubprocessError,
        started_at: datetime,
        start: float,
    ) -> GuardResult:
        command = classification.command
        message = str(error)
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.warning("Command failed [%s]: %s", classification.level.value, message)

        self._log_action(classification, f"ERROR: {message}", approved=True)

        suggestions = await self._suggestions_for(message)
        lesson_id = await self._save_failure_lesson(classification, message)
        await self._record_history(
            task_id, classification, "failed",
            started_at=started_at,
            duration_ms=duration_ms,
            output=error.stdout or None,
            error_output=message,
            lesson_id=lesson_id,
        )

        return GuardResult(
            success=False,
            output=f"Error executing command: {message}",
            classification=classification,
            status=GuardStatus.FAILED,
            task_id=task_id,
            approval_id=approval_id,
            exit_code=error.exit_code,
            duration_ms=duration_ms,
            lesson_id=lesson_id,
            suggestions=suggestions,
            error=error,
        )

    # =========================================================================
    # Side effects
    # =========================================================================

    async def _best_effort(self, call: Awaitable[None], what: str) -> None:
        try:
            await call
        except Exception as e:
            logger.warning("Approval channel %s failed: %s", what, e)

    def _log_action(self, classification: ClassificationResult, result: str, approved: bool) -> None:
        if self.action_log is None:
            return
        try:
            self.action_log.record(classification.level.value, classification.command, result, approved)
        except OSError as e:
            logger.error("Could not write action log: %s", e)

    async def _record_history(
        self,
        task_id: str,
        classification: ClassificationResult,
        status: str,
        started_at: Optional[datetime] = None,
        duration_ms: Optional[int] = None,
        output: Optional[str] = None,
        error_output: Optional[str] = None,
        lesson_id: Optional[int] = None,
    ) -> None:
        if self.knowledge_base is None:
            return
        try:
            await self.knowledge_base.log_task_execution(TaskHistoryEntry(
                task_id=task_id,
                task_type=TASK_TYPE,
                task_description=classification.command,
                status=status,
                risk_level=classification.level.value,
                started_at=started_at,
                completed_at=datetime.now(timezone.utc),
                duration_ms=duration_ms,
                output=output,
                error_output=error_output,
                lesson_id=lesson_id,
            ))
        except SQLAlchemyError as e:
            logger.warning("Could not record task history for %s: %s", task_id, e)

    async def _save_failure_lesson(self, classification: ClassificationResult, message: str) -> Optional[int]:
        if self.knowledge_base is None:
            return None
        command = classification.command
        try:
            return await self.knowledge_base.save_lesson(Lesson(
                task_type=TASK_TYPE,
                category=_command_category(command),
                tags=[classification.level.value.lower()],
                task_description=f"Execute: {command[:200]}",
                initial_approach=command,
                success=False,
                error_message=message,
                lesson_summary=f"Command failed: {message[:100]}",
            ))
        except SQLAlchemyError as e:
            logger.warning("Could not save failure lesson: %s", e)
            return None

    async def _suggestions_for(self, message: str) -> list[str]:
        if self.knowledge_base is None:
            return []
        try:
            lessons = await self.knowledge_base.find_lessons_for_error(message, limit=3)
        except SQLAlchemyError as e:
            logger.warning("Lesson lookup failed: %s", e)
            return []
        return [
            lesson.solution or lesson.lesson_summary
            for lesson in lessons
            if lesson.success or lesson.solution
        ]


def create_execution_guard(
    classifier: CommandClassifier,
    approval_channel: ApprovalChannel,
    knowledge_base: Optional[KnowledgeBase] = None,
    log_dir: Optional[Union[str, Path]] = None,
    exec_timeout_seconds: Optional[float] = None,
    max_output_bytes: Optional[int] = None,
) -> ExecutionGuard:
    """Create an ExecutionGuard with a subprocess executor and optional action log."""
    executor_kwargs = {}
    if exec_timeout_seconds is not None:
        executor_kwargs["timeout_seconds"] = exec_timeout_seconds
    if max_output_bytes is not None:
        executor_kwargs["max_output_bytes"] = max_output_bytes
    return ExecutionGuard(
        classifier=classifier,
        approval_channel=approval_channel,
        knowledge_base=knowledge_base,
        action_log=ActionLog(log_dir) if log_dir else None,
        executor=SubprocessExecutor(**executor_kwargs),
    )
