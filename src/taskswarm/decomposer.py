from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Literal

from taskswarm.models import ExecutionPlan, Subtask
from taskswarm.scheduler import plan
from taskswarm.specialists import project_type_of, specialist_for

logger = logging.getLogger(__name__)

TaskType = Literal[
    "full_feature", "backend_focused", "frontend_focused", "infrastructure", "general"
]


def _vocabulary(*words: str) -> re.Pattern[str]:
    alternatives = "|".join(sorted(words, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})s?\b", re.IGNORECASE)


UI_PATTERN = _vocabulary(
    "ui", "ux", "interface", "form", "page", "component", "styling", "frontend", "front-end",
    "view", "screen", "button", "layout", "css", "dashboard", "template",
)
DATA_PATTERN = _vocabulary(
    "api", "model", "database", "db", "migration", "service", "backend", "back-end",
    "endpoint", "schema", "server", "query", "table",
)
INFRA_PATTERN = _vocabulary(
    "deploy", "deployment", "config", "configuration", "setup", "install", "docker",
    "environment", "ci", "cd", "pipeline", "kubernetes", "infrastructure",
)


def classify(description: str) -> TaskType:
    text = description or ""
    has_ui = bool(UI_PATTERN.search(text))
    has_data = bool(DATA_PATTERN.search(text))
    if has_ui and has_data:
        return "full_feature"
    if has_data:
        return "backend_focused"
    if has_ui:
        return "frontend_focused"
    if INFRA_PATTERN.search(text):
        return "infrastructure"
    return "general"


def _subtask(
    kind: str,
    task_id: str,
    description: str,
    project_type: str,
    *,
    dependencies: list[str] | None = None,
    priority: int = 1,
) -> Subtask:
    profile = specialist_for(kind)
    return Subtask(
        id=task_id,
        role=profile.role,  # type: ignore[arg-type]
        description=description,
        dependencies=list(dependencies or []),
        priority=priority,
        context=profile.context(project_type),
    )


def decompose_subtasks(
    description: str,
    project_context: dict[str, Any] | None = None,
    *,
    token: str | None = None,
) -> list[Subtask]:
    """Expand a task description into the fixed subtask template for its type.

    ``token`` is the shared suffix of all subtask ids produced by one call.
    """
    description = description.strip()
    task_type = classify(description)
    project_type = project_type_of(project_context)
    suffix = token or uuid.uuid4().hex[:6]

    def ident(prefix: str) -> str:
        return f"{prefix}-{suffix}"

    if task_type == "full_feature":
        subtasks = [
            _subtask(
                "backend",
                ident("backend"),
                f"Implement backend logic, models, and API endpoints for: {description}",
                project_type,
                priority=1,
            ),
            _subtask(
                "frontend",
                ident("frontend"),
                f"Create user interface and frontend components for: {description}",
                project_type,
                dependencies=[ident("backend")],
                priority=2,
            ),
            _subtask(
                "qa",
                ident("qa"),
                f"Create comprehensive tests and quality assurance for: {description}",
                project_type,
                dependencies=[ident("backend"), ident("frontend")],
                priority=3,
            ),
            _subtask(
                "integration",
                ident("integration"),
                f"Integrate, refine, and polish the complete implementation of: {description}",
                project_type,
                dependencies=[ident("qa")],
                priority=4,
            ),
        ]
    elif task_type == "backend_focused":
        subtasks = [
            _subtask("backend", ident("backend"), description, project_type),
            _subtask(
                "qa",
                ident("qa-backend"),
                f"Test and validate backend implementation: {description}",
                project_type,
                dependencies=[ident("backend")],
                priority=2,
            ),
        ]
    elif task_type == "frontend_focused":
        subtasks = [
            _subtask("frontend", ident("frontend"), description, project_type),
            _subtask(
                "qa",
                ident("qa-frontend"),
                f"Test and validate frontend implementation: {description}",
                project_type,
                dependencies=[ident("frontend")],
                priority=2,
            ),
        ]
    elif task_type == "infrastructure":
        subtasks = [_subtask("infrastructure", ident("infra"), description, project_type)]
    else:
        subtasks = [_subtask("general", ident("general"), description, project_type)]

    logger.info("Classified task as %s with %d subtasks", task_type, len(subtasks))
    return subtasks


def decompose(
    description: str,
    project_context: dict[str, Any] | None = None,
    *,
    token: str | None = None,
) -> ExecutionPlan:
    execution_plan = plan(decompose_subtasks(description, project_context, token=token))
    execution_plan.task_type = classify(description)
    return execution_plan


class TaskDecomposer:
    """Holds the default project context so callers can decompose bare descriptions."""

    def __init__(self, project_context: dict[str, Any] | None = None) -> None:
        self.project_context = dict(project_context or {})

    def decompose(
        self,
        description: str,
        project_context: dict[str, Any] | None = None,
    ) -> ExecutionPlan:
        merged = {**self.project_context, **(project_context or {})}
        return decompose(description, merged)
