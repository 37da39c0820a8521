from __future__ import annotations

import filecmp
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from taskswarm.config import STATE_DIRNAME
from taskswarm.errors import SwarmError, WorkspaceCreationFailed

logger = logging.getLogger(__name__)

INITIAL_COMMIT_MESSAGE = "Initial commit - taskswarm setup"
UNMERGED_STATES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})


class GitCommandError(SwarmError):
    """Raised when a git subprocess exits non-zero."""


@dataclass(slots=True)
class Workspace:
    key: str
    path: Path
    branch: str | None = None


class WorkspaceBackend(ABC):
    """Creates and releases isolated working copies for agents."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.workspaces_dir = self.repo_root / STATE_DIRNAME / "worktrees"

    def path_for(self, key: str) -> Path:
        return self.workspaces_dir / key

    @abstractmethod
    def create_isolated_workspace(self, key: str) -> Workspace: ...

    @abstractmethod
    def remove_workspace(self, path: Path) -> None: ...

    def delete_branch(self, name: str) -> None:
        """Delete a workspace branch. No-op for backends without branches."""

    def list_branches(self) -> list[str]:
        return []

    @abstractmethod
    def changed_files(self, path: Path) -> list[str]: ...

    def commits_ahead(self, path: Path) -> list[str]:
        """One-line summaries of commits made in a workspace since it was created."""
        return []

    def conflicted_files(self, path: Path) -> list[str]:
        return []

    def list_workspaces(self) -> list[Path]:
        if not self.workspaces_dir.exists():
            return []
        return sorted(child for child in self.workspaces_dir.iterdir() if child.is_dir())


def is_git_repo(path: Path) -> bool:
    proc = subprocess.run(
        ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
        cwd=path,
        text=True,
        capture_output=True,
    )
    return proc.returncode == 0 and proc.stdout.strip() == "true"


class GitWorktreeBackend(WorkspaceBackend):
    """One ``git worktree`` plus branch ``<prefix>/<key>`` per agent."""

    def __init__(self, repo_root: Path, *, branch_prefix: str = "swarm") -> None:
        super().__init__(repo_root)
        self.branch_prefix = branch_prefix.strip("/") or "swarm"

    def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=cwd or self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise GitCommandError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def branch_for(self, key: str) -> str:
        return f"{self.branch_prefix}/{key}"

    def has_commits(self) -> bool:
        return self._run_git(["rev-parse", "--verify", "HEAD"], check=False).returncode == 0

    def _identity_args(self) -> list[str]:
        args: list[str] = []
        if not self._run_git(["config", "user.name"], check=False).stdout.strip():
            args.extend(["-c", "user.name=taskswarm"])
        if not self._run_git(["config", "user.email"], check=False).stdout.strip():
            args.extend(["-c", "user.email=taskswarm@localhost"])
        return args

    def exclude_state_dir(self) -> None:
        proc = self._run_git(["rev-parse", "--git-path", "info/exclude"], check=False)
        if proc.returncode != 0:
            return
        exclude_file = Path(proc.stdout.strip())
        if not exclude_file.is_absolute():
            exclude_file = self.repo_root / exclude_file
        pattern = f"/{STATE_DIRNAME}/"
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        if pattern in existing.splitlines():
            return
        exclude_file.parent.mkdir(parents=True, exist_ok=True)
        suffix = "" if not existing or existing.endswith("\n") else "\n"
        exclude_file.write_text(f"{existing}{suffix}{pattern}\n", encoding="utf-8")

    def ensure_initial_commit(self) -> bool:
        """Create the first commit of an empty repository. Returns True if one was made."""
        if self.has_commits():
            return False
        self.exclude_state_dir()
        self._run_git(["add", "-A"])
        self._run_git(
            [*self._identity_args(), "commit", "--allow-empty", "-m", INITIAL_COMMIT_MESSAGE]
        )
        logger.info("Created initial commit in %s", self.repo_root)
        return True

    def create_isolated_workspace(self, key: str) -> Workspace:
        path = self.path_for(key)
        branch = self.branch_for(key)
        try:
            self.exclude_state_dir()
            self.ensure_initial_commit()
            path.parent.mkdir(parents=True, exist_ok=True)
            self._run_git(["worktree", "add", "-b", branch, str(path), "HEAD"])
        except (GitCommandError, OSError) as exc:
            raise WorkspaceCreationFailed(f"Could not create worktree {key}: {exc}") from exc
        logger.info("Created worktree %s on branch %s", path, branch)
        return Workspace(key=key, path=path, branch=branch)

    def remove_workspace(self, path: Path) -> None:
        path = Path(path)
        if path.exists():
            proc = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
            if proc.returncode != 0:
                logger.warning(
                    "git worktree remove failed for %s, deleting directory: %s",
                    path,
                    proc.stderr.strip(),
                )
                shutil.rmtree(path)
        self._run_git(["worktree", "prune"], check=False)

    def delete_branch(self, name: str) -> None:
        self._run_git(["branch", "-D", name])

    def list_branches(self) -> list[str]:
        proc = self._run_git(
            ["branch", "--list", f"{self.branch_prefix}/*", "--format=%(refname:short)"],
            check=False,
        )
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def list_workspaces(self) -> list[Path]:
        proc = self._run_git(["worktree", "list", "--porcelain"], check=False)
        paths: list[Path] = []
        for line in proc.stdout.splitlines():
            if not line.startswith("worktree "):
                continue
            candidate = Path(line[len("worktree ") :].strip())
            try:
                candidate.resolve().relative_to(self.workspaces_dir.resolve())
            except ValueError:
                continue
            paths.append(candidate)
        return sorted(paths)

    def changed_files(self, path: Path) -> list[str]:
        changed: set[str] = set()
        status = self._run_git(["status", "--porcelain"], cwd=path, check=False)
        for line in status.stdout.splitlines():
            name = line[3:].strip()
            if " -> " in name:
                name = name.split(" -> ", 1)[1]
            if name:
                changed.add(name)
        base = self._run_git(["rev-parse", "HEAD"], check=False).stdout.strip()
        if base:
            committed = self._run_git(
                ["diff", "--name-only", f"{base}...HEAD"], cwd=path, check=False
            )
            changed.update(line.strip() for line in committed.stdout.splitlines() if line.strip())
        return sorted(changed)

    def commits_ahead(self, path: Path) -> list[str]:
        base = self._run_git(["rev-parse", "HEAD"], check=False).stdout.strip()
        if not base:
            return []
        log = self._run_git(["log", "--oneline", f"{base}..HEAD"], cwd=path, check=False)
        return [line.strip() for line in log.stdout.splitlines() if line.strip()]

    def conflicted_files(self, path: Path) -> list[str]:
        status = self._run_git(["status", "--porcelain"], cwd=path, check=False)
        return sorted(
            line[3:].strip()
            for line in status.stdout.splitlines()
            if line[:2] in UNMERGED_STATES
        )


class DirectoryWorkspaceBackend(WorkspaceBackend):
    """Plain directory copies for repositories without git."""

    def _ignore(self, directory: str, names: list[str]) -> set[str]:
        if Path(directory).resolve() == self.repo_root:
            return {name for name in names if name in {STATE_DIRNAME, ".git"}}
        return set()

    def create_isolated_workspace(self, key: str) -> Workspace:
        path = self.path_for(key)
        if path.exists():
            raise WorkspaceCreationFailed(f"Workspace already exists: {path}")
        try:
            shutil.copytree(self.repo_root, path, ignore=self._ignore, symlinks=True)
        except (OSError, shutil.Error) as exc:
            raise WorkspaceCreationFailed(f"Could not copy workspace {key}: {exc}") from exc
        logger.info("Created directory workspace %s", path)
        return Workspace(key=key, path=path)

    def remove_workspace(self, path: Path) -> None:
        if Path(path).exists():
            shutil.rmtree(path)

    def changed_files(self, path: Path) -> list[str]:
        changed: list[str] = []

        def _walk(comparison: filecmp.dircmp, prefix: str) -> None:
            for name in comparison.left_only + comparison.right_only + comparison.diff_files:
                changed.append(f"{prefix}{name}")
            for name, sub in comparison.subdirs.items():
                _walk(sub, f"{prefix}{name}/")

        _walk(filecmp.dircmp(self.repo_root, path, ignore=[STATE_DIRNAME, ".git"]), "")
        return sorted(changed)


def build_workspace_backend(repo_root: Path, *, branch_prefix: str = "swarm") -> WorkspaceBackend:
    if is_git_repo(repo_root):
        return GitWorktreeBackend(repo_root, branch_prefix=branch_prefix)
    return DirectoryWorkspaceBackend(repo_root)
