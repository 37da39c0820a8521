from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from taskswarm.models import ROLES, Subtask, SubtaskContext

_UNSAFE_TASK_CHARS = re.compile(r"[`$\\;|&><]")
_UNSAFE_COMMAND_CHARS = re.compile(r"[;&|`$\\]")

GENERIC_PROJECT_TYPE = "generic"


def sanitize_task(text: str) -> str:
    return _UNSAFE_TASK_CHARS.sub("", str(text)).strip()


def sanitize_command(command: str) -> str:
    return _UNSAFE_COMMAND_CHARS.sub("", str(command)).strip()


def sanitize_role(role: str) -> str:
    normalized = str(role).strip().lower()
    return normalized if normalized in ROLES else "general"


def project_type_of(project_context: dict[str, Any] | None) -> str:
    if not project_context:
        return GENERIC_PROJECT_TYPE
    value = project_context.get("type") or project_context.get("project_type")
    return str(value).strip().lower() if value else GENERIC_PROJECT_TYPE


@dataclass(slots=True)
class PromptEnvironment:
    """Facts about the run that every worker prompt carries."""

    project_name: str = "Project"
    technology_stack: list[str] = field(default_factory=list)
    test_command: str = ""
    code_standards: list[str] = field(default_factory=list)
    working_directory: Path | None = None
    session_id: str | None = None


class SpecialistProfile:
    """Role-specific hints and prompt text for one kind of worker."""

    kind: str = "general"
    role: str = "general"
    description: str = "You are a general-purpose agent."
    focus: str = ""
    coordination_note: str = ""

    def role_focus(self, project_type: str) -> str:
        return f"You are a {self.role} specialist working on a {project_type} project"

    def responsibilities(self, project_type: str) -> list[str]:
        return []

    def best_practices(self, project_type: str) -> list[str]:
        return []

    def context(self, project_type: str = GENERIC_PROJECT_TYPE) -> SubtaskContext:
        return SubtaskContext(
            role_focus=self.role_focus(project_type),
            responsibilities=self.responsibilities(project_type),
            best_practices=self.best_practices(project_type),
            coordination_note=self.coordination_note,
        )

    def system_prompt(self, env: PromptEnvironment) -> str:
        lines = [
            f"You are a specialized {self.role.upper()} agent working as part of a "
            "taskswarm multi-agent team.",
            "",
            f"## Your Role: {self.role.capitalize()}",
            self.description,
        ]
        if self.focus:
            lines.extend(["", f"FOCUS: {self.focus}"])
        lines.extend(
            [
                "",
                "## Working Context",
                f"- Project: {env.project_name}",
                f"- Technology Stack: {', '.join(env.technology_stack) or 'unspecified'}",
                f"- Working Directory: {env.working_directory or Path.cwd()}",
                f"- Code Standards: {', '.join(env.code_standards) or 'project defaults'}",
            ]
        )
        return "\n".join(lines).strip()

    def render_prompt(self, subtask: Subtask, env: PromptEnvironment) -> str:
        context = subtask.context or self.context()
        description = sanitize_task(subtask.description)
        test_command = sanitize_command(env.test_command)
        summary = " ".join(description.split()[:5])
        sections = [
            context.role_focus,
            "",
            "## Your Mission",
            description,
            "",
            "## Your Responsibilities",
            *[f"- {item}" for item in context.responsibilities],
            "",
            "## Best Practices to Follow",
            *[f"- {item}" for item in context.best_practices],
            "",
            "## Team Coordination Note",
            context.coordination_note or "None",
            "",
            "## Task Context",
            f"- Task ID: {subtask.id}",
            f"- Priority: {subtask.priority}",
            f"- Dependencies: {', '.join(subtask.dependencies) or 'None'}",
        ]
        if env.session_id:
            sections.append(f"- Session: {env.session_id}")
        sections.extend(
            [
                "",
                "## Important Instructions",
                "1. Work autonomously in the working directory; do not wait for permission.",
                "2. Stay inside your specialized area and follow existing project conventions.",
            ]
        )
        if test_command:
            sections.append(f"3. Verify your work with: {test_command}")
        else:
            sections.append("3. Verify your work with the project's test suite.")
        sections.append(
            f"4. When complete, commit with: git add -A && "
            f"git commit -m '{self.role}: {summary}...'"
        )
        return "\n".join(sections).strip() + "\n"
