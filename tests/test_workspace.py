import subprocess
from pathlib import Path

import pytest

from taskswarm.errors import WorkspaceCreationFailed
from taskswarm.workspace import (
    INITIAL_COMMIT_MESSAGE,
    DirectoryWorkspaceBackend,
    GitWorktreeBackend,
    build_workspace_backend,
    is_git_repo,
)


def _git(repo_path: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=repo_path, check=True, text=True, capture_output=True
    )
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path, *, seed: bool = True) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    if not seed:
        return
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _init_git_repo(path)
    return path


def test_build_workspace_backend_detects_git(repo: Path, tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    assert is_git_repo(repo)
    assert not is_git_repo(plain)
    assert isinstance(build_workspace_backend(repo), GitWorktreeBackend)
    assert isinstance(build_workspace_backend(plain), DirectoryWorkspaceBackend)


def test_worktree_lifecycle(repo: Path) -> None:
    backend = GitWorktreeBackend(repo, branch_prefix="swarm")

    workspace = backend.create_isolated_workspace("backend-1")

    assert workspace.path == repo.resolve() / ".taskswarm" / "worktrees" / "backend-1"
    assert workspace.branch == "swarm/backend-1"
    assert (workspace.path / "README.md").read_text(encoding="utf-8") == "seed\n"
    assert backend.list_branches() == ["swarm/backend-1"]
    assert [path.name for path in backend.list_workspaces()] == ["backend-1"]
    assert _git(repo, "status", "--porcelain") == ""

    (workspace.path / "api.py").write_text("print('api')\n", encoding="utf-8")
    assert backend.changed_files(workspace.path) == ["api.py"]

    _git(workspace.path, "add", "api.py")
    _git(workspace.path, "commit", "-m", "api")
    (workspace.path / "README.md").write_text("changed\n", encoding="utf-8")
    assert backend.changed_files(workspace.path) == ["README.md", "api.py"]

    backend.remove_workspace(workspace.path)
    assert not workspace.path.exists()
    assert backend.list_workspaces() == []

    backend.delete_branch("swarm/backend-1")
    assert backend.list_branches() == []


def test_duplicate_worktree_fails(repo: Path) -> None:
    backend = GitWorktreeBackend(repo)
    backend.create_isolated_workspace("qa-1")

    with pytest.raises(WorkspaceCreationFailed):
        backend.create_isolated_workspace("qa-1")


def test_empty_repository_gets_initial_commit(tmp_path: Path) -> None:
    repo = tmp_path / "empty"
    repo.mkdir()
    _init_git_repo(repo, seed=False)
    (repo / "app.py").write_text("x = 1\n", encoding="utf-8")
    backend = GitWorktreeBackend(repo)

    workspace = backend.create_isolated_workspace("general-1")

    assert _git(repo, "log", "--format=%s") == INITIAL_COMMIT_MESSAGE
    assert (workspace.path / "app.py").exists()
    assert backend.ensure_initial_commit() is False


def test_state_dir_is_excluded_once(repo: Path) -> None:
    backend = GitWorktreeBackend(repo)

    backend.exclude_state_dir()
    backend.exclude_state_dir()

    exclude = (repo / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert exclude.splitlines().count("/.taskswarm/") == 1


def test_directory_workspace_copies_and_diffs(tmp_path: Path) -> None:
    root = tmp_path / "plain"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("x = 1\n", encoding="utf-8")
    (root / "notes.txt").write_text("notes\n", encoding="utf-8")
    (root / ".taskswarm").mkdir()
    (root / ".taskswarm" / "session.json").write_text("{}", encoding="utf-8")
    backend = DirectoryWorkspaceBackend(root)

    workspace = backend.create_isolated_workspace("frontend-1")

    assert workspace.branch is None
    assert (workspace.path / "src" / "app.py").exists()
    assert not (workspace.path / ".taskswarm").exists()
    assert backend.changed_files(workspace.path) == []

    (workspace.path / "src" / "app.py").write_text("x = 1000\n", encoding="utf-8")
    (workspace.path / "web.js").write_text("ok\n", encoding="utf-8")
    assert backend.changed_files(workspace.path) == ["src/app.py", "web.js"]

    with pytest.raises(WorkspaceCreationFailed):
        backend.create_isolated_workspace("frontend-1")

    backend.remove_workspace(workspace.path)
    assert not workspace.path.exists()
    assert backend.list_workspaces() == []


def test_commits_ahead_and_conflicts(repo: Path) -> None:
    backend = GitWorktreeBackend(repo, branch_prefix="swarm")
    workspace = backend.create_isolated_workspace("backend-2")

    assert backend.commits_ahead(workspace.path) == []

    (workspace.path / "README.md").write_text("agent\n", encoding="utf-8")
    _git(workspace.path, "commit", "-am", "agent edit")
    _git(repo, "checkout", "-b", "other")
    (repo / "README.md").write_text("other\n", encoding="utf-8")
    _git(repo, "commit", "-am", "other edit")

    commits = backend.commits_ahead(workspace.path)
    assert len(commits) == 1
    assert commits[0].endswith("agent edit")

    subprocess.run(
        ["git", "merge", "other"], cwd=workspace.path, text=True, capture_output=True
    )
    assert backend.conflicted_files(workspace.path) == ["README.md"]
