"""
Task Planner
============

Records multi-step plans as JSON documents and keeps them in sync with the
knowledge base: lessons are consulted when a plan is created, and failures
and outcomes are written back as new lessons.

The planner does no scheduling. Steps run strictly one after another and
a step only starts once all of its dependencies have completed.

Storage:
- <plans_dir>/<plan_id>.json - every plan
- <plans_dir>/plan.json      - the most recently saved plan
"""

import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from execguard.classifier import ClassificationResult, CommandClassifier, RiskTier
from execguard.knowledge import KnowledgeBase, Lesson, LessonQuery, extract_keywords


logger = logging.getLogger(__name__)

STEP_STATUSES = ("pending", "in_progress", "completed", "failed", "skipped")
PLAN_STATUSES = ("planning", "ready", "executing", "completed", "failed", "aborted")
RISK_LEVELS = ("low", "medium", "high", "critical")

MAX_CONSULTED_LESSONS = 5
MAX_WARNINGS = 5


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Data Types
# =============================================================================

@dataclass
class PlanStep:
    """One step of a plan."""
    id: int
    action: str
    description: str
    tool: Optional[str] = None
    args: Optional[dict[str, Any]] = None
    dependencies: list[int] = field(default_factory=list)
    status: str = "pending"
    result: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    safety_level: Optional[str] = None  # risk tier from review_step()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "description": self.description,
            "tool": self.tool,
            "args": self.args,
            "dependencies": list(self.dependencies),
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "safety_level": self.safety_level,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlanStep":
        return cls(
            id=data["id"],
            action=data["action"],
            description=data["description"],
            tool=data.get("tool"),
            args=data.get("args"),
            dependencies=list(data.get("dependencies") or []),
            status=data.get("status", "pending"),
            result=data.get("result"),
            error=data.get("error"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            safety_level=data.get("safety_level"),
        )


@dataclass
class RelevantLesson:
    """A lesson consulted while planning."""
    id: int
    summary: str
    relevance: str
    solution: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "summary": self.summary,
            "solution": self.solution,
            "relevance": self.relevance,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RelevantLesson":
        return cls(
            id=data["id"],
            summary=data["summary"],
            relevance=data.get("relevance", ""),
            solution=data.get("solution"),
        )


@dataclass
class Plan:
    """A plan document."""
    id: str
    created_at: str
    updated_at: str
    task: dict[str, Any]
    steps: list[PlanStep]
    status: str = "planning"
    lessons_consulted: list[RelevantLesson] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    current_step: Optional[int] = None
    outcome: Optional[dict[str, Any]] = None
    risk_level: str = "low"
    requires_approval: bool = False

    def get_step(self, step_id: int) -> Optional[PlanStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "task": dict(self.task),
            "memory_context": {
                "lessons_consulted": [l.to_dict() for l in self.lessons_consulted],
                "warnings": list(self.warnings),
            },
            "steps": [s.to_dict() for s in self.steps],
            "status": self.status,
            "current_step": self.current_step,
            "outcome": self.outcome,
            "safety": {
                "risk_level": self.risk_level,
                "requires_approval": self.requires_approval,
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        memory = data.get("memory_context") or {}
        safety = data.get("safety") or {}
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            task=data["task"],
            steps=[PlanStep.from_dict(s) for s in data.get("steps", [])],
            status=data.get("status", "planning"),
            lessons_consulted=[RelevantLesson.from_dict(l) for l in memory.get("lessons_consulted", [])],
            warnings=list(memory.get("warnings", [])),
            current_step=data.get("current_step"),
            outcome=data.get("outcome"),
            risk_level=safety.get("risk_level", "low"),
            requires_approval=safety.get("requires_approval", False),
        )


@dataclass(frozen=True)
class PlanTemplate:
    """Default steps for a family of task types."""
    name: str
    description: str
    task_types: tuple[str, ...]
    default_steps: tuple[tuple[str, str], ...]  # (action, description)


PLAN_TEMPLATES: list[PlanTemplate] = [
    PlanTemplate(
        name="web_research",
        description="Research a topic on the web",
        task_types=("research", "information_gathering"),
        default_steps=(
            ("prepare", "Query memory for relevant past research"),
            ("navigate", "Open browser and navigate to search engine"),
            ("search", "Enter search query"),
            ("analyze", "Review search results and identify relevant pages"),
            ("extract", "Extract key information from pages"),
            ("screenshot", "Take screenshots for verification"),
            ("summarize", "Compile findings into summary"),
            ("save_lesson", "Save learnings to memory"),
        ),
    ),
    PlanTemplate(
        name="web_automation",
        description="Automate a web-based task",
        task_types=("automation", "web_task"),
        default_steps=(
            ("prepare", "Query memory for similar automations"),
            ("launch_browser", "Start browser in controlled mode"),
            ("navigate", "Go to target URL"),
            ("verify_page", "Screenshot and verify correct page loaded"),
            ("interact", "Perform the required interactions"),
            ("verify_result", "Screenshot and verify success"),
            ("cleanup", "Close browser and clean up"),
            ("save_lesson", "Record outcome in memory"),
        ),
    ),
    PlanTemplate(
        name="bug_fix",
        description="Fix a bug in code",
        task_types=("bug_fix", "debugging"),
        default_steps=(
            ("prepare", "Query memory for similar bugs and solutions"),
            ("reproduce", "Understand and reproduce the bug"),
            ("analyze", "Identify root cause"),
            ("plan_fix", "Design the fix approach"),
            ("implement", "Make the code changes"),
            ("test", "Verify the fix works"),
            ("save_lesson", "Document the fix in memory"),
        ),
    ),
    PlanTemplate(
        name="installation",
        description="Install software or dependencies",
        task_types=("installation", "setup"),
        default_steps=(
            ("prepare", "Check memory for installation gotchas"),
            ("verify_prerequisites", "Check system requirements"),
            ("backup", "Backup if needed"),
            ("install", "Run installation commands"),
            ("configure", "Apply configuration"),
            ("verify", "Test installation works"),
            ("save_lesson", "Record any issues encountered"),
        ),
    ),
]


def find_template(task_type: str) -> Optional[PlanTemplate]:
    for template in PLAN_TEMPLATES:
        if task_type in template.task_types:
            return template
    return None


_CRITICAL_KEYWORDS = ("payment", "financial", "bank", "password", "credential", "registry", "system32")
_HIGH_KEYWORDS = ("delete", "remove", "api", "production")
_MEDIUM_KEYWORDS = ("browser", "navigate")


def assess_risk_level(task_type: str, description: str) -> str:
    """Keyword-based risk level for a task."""
    lowered = description.lower()
    if any(k in lowered for k in _CRITICAL_KEYWORDS):
        return "critical"
    if task_type == "installation" or any(k in lowered for k in _HIGH_KEYWORDS):
        return "high"
    if task_type in ("automation", "web_task") or any(k in lowered for k in _MEDIUM_KEYWORDS):
        return "medium"
    return "low"


def _raise_risk(current: str, new: str) -> str:
    return new if RISK_LEVELS.index(new) > RISK_LEVELS.index(current) else current


# =============================================================================
# Planner
# =============================================================================

class Planner:
    """Creates plans and tracks their execution."""

    def __init__(self, plans_dir: Union[str, Path], knowledge_base: KnowledgeBase):
        self.plans_dir = Path(plans_dir)
        self.plans_dir.mkdir(parents=True, exist_ok=True)
        self.knowledge_base = knowledge_base
        self.current_plan: Optional[Plan] = None

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_plan(
        self,
        task_type: str,
        description: str,
        success_criteria: list[str],
        category: Optional[str] = None,
    ) -> Plan:
        """
        Create a plan for a task, consulting past lessons.

        Steps come from the matching template, or a generic five-step
        outline when no template covers the task type.
        """
        lessons = await self._consult_memory(task_type, description, category)
        warnings = await self._warnings_from_memory(task_type, category)

        template = find_template(task_type)
        if template:
            steps = [
                PlanStep(id=i, action=action, description=desc)
                for i, (action, desc) in enumerate(template.default_steps, 1)
            ]
        else:
            steps = self._generic_steps(description)

        risk_level = assess_risk_level(task_type, description)
        now = _now()
        plan = Plan(
            id=self._generate_plan_id(),
            created_at=now,
            updated_at=now,
            task={
                "type": task_type,
                "description": description,
                "success_criteria": list(success_criteria),
                "category": category,
            },
            steps=steps,
            lessons_consulted=lessons,
            warnings=warnings,
            risk_level=risk_level,
            requires_approval=risk_level in ("high", "critical"),
        )

        self.current_plan = plan
        self._save_plan(plan)
        logger.info("Created plan %s (%s, risk=%s)", plan.id, task_type, risk_level)
        return plan

    async def _consult_memory(
        self, task_type: str, description: str, category: Optional[str]
    ) -> list[RelevantLesson]:
        found: dict[int, RelevantLesson] = {}

        def add(lessons: list[Lesson], relevance: str) -> None:
            for lesson in lessons:
                if lesson.id not in found:
                    found[lesson.id] = RelevantLesson(
                        id=lesson.id,
                        summary=lesson.lesson_summary,
                        solution=lesson.solution,
                        relevance=relevance,
                    )

        add(await self.knowledge_base.query_lessons(LessonQuery(task_type=task_type, limit=3)),
            f"Same task type: {task_type}")

        if category:
            add(await self.knowledge_base.query_lessons(
                LessonQuery(category=category, success_only=True, limit=2)),
                f"Same category: {category}")

        keywords = extract_keywords(description)
        if keywords:
            add(await self.knowledge_base.search_lessons(" OR ".join(keywords), limit=3),
                "Content similarity")

        return list(found.values())[:MAX_CONSULTED_LESSONS]

    async def _warnings_from_memory(self, task_type: str, category: Optional[str]) -> list[str]:
        warnings: list[str] = []

        failures = await self.knowledge_base.query_lessons(
            LessonQuery(task_type=task_type, failure_only=True, limit=3)
        )
        for failure in failures:
            if failure.error_message:
                warnings.append(f"Avoid: {failure.error_message[:100]}")
            if failure.root_cause:
                warnings.append(f"Watch out: {failure.root_cause}")

        if category:
            category_failures = await self.knowledge_base.query_lessons(
                LessonQuery(category=category, failure_only=True, limit=2)
            )
            for failure in category_failures:
                if failure.lesson_summary not in warnings:
                    warnings.append(failure.lesson_summary)

        return warnings[:MAX_WARNINGS]

    @staticmethod
    def _generic_steps(description: str) -> list[PlanStep]:
        return [
            PlanStep(id=1, action="prepare", description="Query memory for relevant context"),
            PlanStep(id=2, action="analyze", description=f"Analyze requirements: {description}"),
            PlanStep(id=3, action="execute", description="Execute the main task"),
            PlanStep(id=4, action="verify", description="Verify success criteria met"),
            PlanStep(id=5, action="save_lesson", description="Save outcome to memory"),
        ]

    @staticmethod
    def _generate_plan_id() -> str:
        stamp = format(int(time.time() * 1000), "X")
        return f"PLAN-{stamp}-{secrets.token_hex(2).upper()}"

    # =========================================================================
    # Step Bookkeeping
    # =========================================================================

    def get_current_plan(self) -> Optional[Plan]:
        return self.current_plan

    def get_step(self, step_id: int) -> Optional[PlanStep]:
        if self.current_plan is None:
            return None
        return self.current_plan.get_step(step_id)

    def add_step(
        self,
        action: str,
        description: str,
        dependencies: Optional[list[int]] = None,
        tool: Optional[str] = None,
        args: Optional[dict[str, Any]] = None,
    ) -> Optional[PlanStep]:
        """Append a step to the current plan."""
        plan = self.current_plan
        if plan is None:
            return None

        step = PlanStep(
            id=len(plan.steps) + 1,
            action=action,
            description=description,
            tool=tool,
            args=args,
            dependencies=list(dependencies or []),
        )
        plan.steps.append(step)
        self._touch_and_save(plan)
        return step

    def finalize_plan(self) -> Optional[Plan]:
        """Mark the current plan ready for execution."""
        plan = self.current_plan
        if plan is None:
            return None
        plan.status = "ready"
        self._touch_and_save(plan)
        return plan

    def start_step(self, step_id: int) -> Optional[PlanStep]:
        """
        Mark a step in progress.

        Returns:
            The step, or None if it does not exist or a dependency has not
            completed yet
        """
        plan = self.current_plan
        step = self.get_step(step_id)
        if plan is None or step is None:
            return None

        for dep_id in step.dependencies:
            dep = plan.get_step(dep_id)
            if dep is not None and dep.status != "completed":
                logger.debug("Step %s blocked by dependency %s (%s)", step_id, dep_id, dep.status)
                return None

        step.status = "in_progress"
        step.started_at = _now()
        plan.current_step = step_id
        plan.status = "executing"
        self._touch_and_save(plan)
        return step

    def complete_step(self, step_id: int, result: str) -> Optional[PlanStep]:
        """Mark a step completed; the plan completes once every step is done or skipped."""
        plan = self.current_plan
        step = self.get_step(step_id)
        if plan is None or step is None:
            return None

        step.status = "completed"
        step.result = result
        step.completed_at = _now()
        if all(s.status in ("completed", "skipped") for s in plan.steps):
            plan.status = "completed"
        self._touch_and_save(plan)
        return step

    def skip_step(self, step_id: int, reason: Optional[str] = None) -> Optional[PlanStep]:
        plan = self.current_plan
        step = self.get_step(step_id)
        if plan is None or step is None:
            return None

        step.status = "skipped"
        step.result = reason
        step.completed_at = _now()
        if all(s.status in ("completed", "skipped") for s in plan.steps):
            plan.status = "completed"
        self._touch_and_save(plan)
        return step

    async def fail_step(self, step_id: int, error: str) -> Optional[PlanStep]:
        """Mark a step failed, fail the plan and record a lesson."""
        plan = self.current_plan
        step = self.get_step(step_id)
        if plan is None or step is None:
            return None

        step.status = "failed"
        step.error = error
        step.completed_at = _now()
        plan.status = "failed"
        self._touch_and_save(plan)

        try:
            await self.knowledge_base.save_lesson(Lesson(
                task_type=plan.task["type"],
                category=plan.task.get("category"),
                task_description=f"Step {step_id}: {step.action} - {step.description}",
                success=False,
                error_message=error,
                lesson_summary=f'Plan step "{step.action}" failed: {error[:100]}',
            ))
        except SQLAlchemyError as e:
            logger.warning("Could not save lesson for failed step %s: %s", step_id, e)
        return step

    async def complete_plan(self, success: bool, summary: str) -> Optional[Plan]:
        """Close the current plan and record its outcome as a lesson."""
        plan = self.current_plan
        if plan is None:
            return None

        plan.status = "completed" if success else "failed"
        try:
            lesson_id = await self.knowledge_base.save_lesson(Lesson(
                task_type=plan.task["type"],
                category=plan.task.get("category"),
                task_description=plan.task["description"],
                success=success,
                lesson_summary=summary,
                solution=f"Completed via plan {plan.id}" if success else None,
            ))
        except SQLAlchemyError as e:
            logger.warning("Could not save lesson for plan %s: %s", plan.id, e)
            lesson_id = None
        plan.outcome = {"success": success, "summary": summary, "lesson_saved": lesson_id}
        self._touch_and_save(plan)
        return plan

    # =========================================================================
    # Safety Review
    # =========================================================================

    def review_step(self, step_id: int, classifier: CommandClassifier) -> Optional[ClassificationResult]:
        """
        Classify a step's command and raise the plan's risk accordingly.

        BLACKLISTED steps make the plan critical; RED steps make it high.
        Both require approval. Steps without a command are not reviewed.
        """
        plan = self.current_plan
        step = self.get_step(step_id)
        if plan is None or step is None:
            return None

        command = (step.args or {}).get("command")
        if not command:
            return None

        verdict = classifier.classify(command)
        step.safety_level = verdict.level.value
        if verdict.level == RiskTier.BLACKLISTED:
            plan.risk_level = "critical"
            plan.requires_approval = True
        elif verdict.level == RiskTier.RED:
            plan.risk_level = _raise_risk(plan.risk_level, "high")
            plan.requires_approval = True
        self._touch_and_save(plan)
        return verdict

    # =========================================================================
    # Persistence
    # =========================================================================

    def load_plan(self, plan_id: str) -> Optional[Plan]:
        """Load a saved plan and make it current."""
        path = self.plans_dir / f"{plan_id}.json"
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            self.current_plan = Plan.from_dict(json.load(f))
        return self.current_plan

    def _touch_and_save(self, plan: Plan) -> None:
        plan.updated_at = _now()
        self._save_plan(plan)

    def _save_plan(self, plan: Plan) -> None:
        content = json.dumps(plan.to_dict(), indent=2)
        (self.plans_dir / f"{plan.id}.json").write_text(content, encoding="utf-8")
        (self.plans_dir / "plan.json").write_text(content, encoding="utf-8")

    # =========================================================================
    # Display
    # =========================================================================

    def get_plan_summary(self) -> str:
        """Plain-text summary of the current plan."""
        plan = self.current_plan
        if plan is None:
            return "No active plan"

        completed = sum(1 for s in plan.steps if s.status == "completed")
        lines = [
            f"Plan: {plan.id}",
            f"Status: {plan.status.upper()}",
            f"Task: {plan.task['description']}",
            f"Progress: {completed}/{len(plan.steps)} steps",
            f"Risk: {plan.risk_level.upper()}",
        ]

        if plan.lessons_consulted:
            lines.append("")
            lines.append("Relevant Lessons:")
            lines.extend(f"  {i}. {l.summary}" for i, l in enumerate(plan.lessons_consulted, 1))

        if plan.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"  {i}. {w}" for i, w in enumerate(plan.warnings, 1))

        markers = {
            "pending": "[ ]",
            "in_progress": "[~]",
            "completed": "[x]",
            "failed": "[!]",
            "skipped": "[-]",
        }
        lines.append("")
        lines.append("Steps:")
        for s in plan.steps:
            lines.append(f"  {markers.get(s.status, '[?]')} {s.id}. {s.action}: {s.description}")

        return "\n".join(lines)
