from pathlib import Path

from taskswarm.models import Subtask
from taskswarm.specialists import (
    PromptEnvironment,
    project_type_of,
    sanitize_command,
    sanitize_role,
    sanitize_task,
    specialist_for,
)


def test_backend_context_uses_project_specific_practices() -> None:
    rails = specialist_for("backend").context("rails")
    generic = specialist_for("backend").context("generic")

    assert rails.role_focus == "You are a Backend Developer specializing in rails"
    assert "Use Strong Parameters for security" in rails.best_practices
    assert "Follow rails best practices and conventions" in rails.responsibilities
    assert rails.coordination_note == "Always coordinate with frontend team for API contracts"
    assert "Document API contracts clearly" in generic.best_practices


def test_frontend_react_and_nextjs_share_practices() -> None:
    react = specialist_for("frontend").context("react")
    nextjs = specialist_for("frontend").context("nextjs")

    assert react.best_practices == nextjs.best_practices
    assert "Use functional components with hooks" in react.best_practices


def test_integration_and_infrastructure_map_to_general_role() -> None:
    integration = specialist_for("integration")
    infrastructure = specialist_for("infrastructure")

    assert integration.role == "general"
    assert infrastructure.role == "general"
    focus = integration.context().role_focus
    assert focus == "You are a Lead Developer responsible for integration"
    assert specialist_for("unknown-kind").kind == "general"


def test_render_prompt_carries_task_context_and_sanitizes(tmp_path: Path) -> None:
    profile = specialist_for("qa")
    subtask = Subtask(
        id="qa-abc123",
        role="qa",
        description="Test the login flow; rm -rf / `whoami` $HOME",
        dependencies=["backend-abc123", "frontend-abc123"],
        priority=3,
        context=profile.context("django"),
    )
    env = PromptEnvironment(
        project_name="shop",
        technology_stack=["django"],
        test_command="pytest -q; curl evil",
        working_directory=tmp_path,
        session_id="20260101_000000_abcdef",
    )

    prompt = profile.render_prompt(subtask, env)

    assert prompt.startswith("You are a QA Engineer specializing in django")
    assert "## Your Mission" in prompt
    assert "Test the login flow rm -rf / whoami HOME" in prompt
    assert "- Task ID: qa-abc123" in prompt
    assert "- Priority: 3" in prompt
    assert "- Dependencies: backend-abc123, frontend-abc123" in prompt
    assert "- Session: 20260101_000000_abcdef" in prompt
    assert "Verify your work with: pytest -q curl evil" in prompt
    assert "git commit -m 'qa: Test the login flow rm...'" in prompt
    assert "`" not in prompt
    assert "$" not in prompt


def test_system_prompt_describes_role_and_project(tmp_path: Path) -> None:
    env = PromptEnvironment(
        project_name="shop",
        technology_stack=["react", "node"],
        working_directory=tmp_path,
    )

    system_prompt = specialist_for("frontend").system_prompt(env)

    assert "specialized FRONTEND agent" in system_prompt
    assert "## Your Role: Frontend" in system_prompt
    assert "- Project: shop" in system_prompt
    assert "- Technology Stack: react, node" in system_prompt
    assert f"- Working Directory: {tmp_path}" in system_prompt


def test_sanitizers() -> None:
    assert sanitize_role(" Backend ") == "backend"
    assert sanitize_role("hacker; rm") == "general"
    assert sanitize_task("build `x` && echo $Y > out") == "build x  echo Y  out"
    assert sanitize_command("npm test && rm -rf /") == "npm test  rm -rf /"
    assert project_type_of(None) == "generic"
    assert project_type_of({"type": " Rails "}) == "rails"
    assert project_type_of({"project_type": "react"}) == "react"
