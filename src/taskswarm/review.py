from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskswarm.errors import SwarmError
from taskswarm.models import AgentRecord, utcnow_iso
from taskswarm.workspace import WorkspaceBackend

logger = logging.getLogger(__name__)

ReviewState = Literal["changes", "committed", "initialized", "missing", "error"]
REVIEW_STATES: tuple[str, ...] = ("changes", "committed", "initialized", "missing", "error")


@dataclass(slots=True)
class WorkspaceReview:
    path: str
    branch: str | None
    agent_id: str | None
    agent_status: str
    state: ReviewState
    changed_files: list[str] = field(default_factory=list)
    commits: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "branch": self.branch,
            "agent_id": self.agent_id,
            "agent_status": self.agent_status,
            "state": self.state,
            "changed_files": list(self.changed_files),
            "commits": list(self.commits),
            "issues": list(self.issues),
        }


@dataclass(slots=True)
class ReviewReport:
    generated_at: str
    workspaces: list[WorkspaceReview] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        counts = {state: 0 for state in REVIEW_STATES}
        for review in self.workspaces:
            counts[review.state] += 1
        return {
            "total_workspaces": len(self.workspaces),
            **counts,
            "orphaned": sum(1 for review in self.workspaces if review.agent_id is None),
            "total_issues": sum(len(review.issues) for review in self.workspaces),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "summary": self.summary(),
            "workspaces": [review.to_dict() for review in self.workspaces],
        }


def _state_of(changed: list[str], commits: list[str]) -> ReviewState:
    if commits:
        return "committed"
    if changed:
        return "changes"
    return "initialized"


def review_workspace(
    backend: WorkspaceBackend, path: Path, record: AgentRecord | None
) -> WorkspaceReview:
    """Inspect one workspace: what changed, what was committed, what looks wrong."""
    review = WorkspaceReview(
        path=str(path),
        branch=record.branch if record else None,
        agent_id=record.id if record else None,
        agent_status=record.status if record else "orphan",
        state="initialized",
    )
    if record is None:
        review.issues.append("no agent record for this workspace")
    if not path.exists():
        review.state = "missing"
        review.issues.append("workspace directory is missing")
        return review
    try:
        review.changed_files = backend.changed_files(path)
        review.commits = backend.commits_ahead(path)
        conflicts = backend.conflicted_files(path)
    except (SwarmError, OSError) as exc:
        logger.warning("Could not review workspace %s: %s", path, exc)
        review.state = "error"
        review.issues.append(f"review failed: {exc}")
        return review
    review.state = _state_of(review.changed_files, review.commits)
    if conflicts:
        review.issues.append(f"merge conflicts in {', '.join(conflicts)}")
    if record is not None and record.status == "failed" and review.changed_files:
        review.issues.append("agent failed with work left in the workspace")
    return review


def review_workspaces(backend: WorkspaceBackend, agents: list[AgentRecord]) -> ReviewReport:
    """Review every agent workspace still on disk or still owed a release."""
    records: dict[str, AgentRecord] = {}
    paths: dict[str, Path] = {}
    for agent in agents:
        if not agent.workspace_path:
            continue
        key = str(Path(agent.workspace_path).resolve())
        records[key] = agent
        if not agent.workspace_released:
            paths[key] = Path(agent.workspace_path)
    for path in backend.list_workspaces():
        paths.setdefault(str(path.resolve()), path)

    report = ReviewReport(generated_at=utcnow_iso())
    for key in sorted(paths):
        report.workspaces.append(review_workspace(backend, paths[key], records.get(key)))
    logger.info("Reviewed %d workspaces", len(report.workspaces))
    return report
