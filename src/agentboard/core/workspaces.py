"""Workspace registry: repositories the board runs tasks against."""

import logging
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path

from agentboard.config import Config
from agentboard.core import worktrees
from agentboard.db.models import BranchInfo, Workspace
from agentboard.integrations.git import GitClient, GitError

logger = logging.getLogger(__name__)

PRD_FILENAME = "PRD.md"


def register_workspace(
    db: sqlite3.Connection,
    name: str,
    path: str | Path,
    repo_url: str = "",
    default_branch: str = "main",
) -> Workspace:
    """Register an existing repository as a workspace."""
    if not name or not name.strip():
        raise ValueError("Workspace name cannot be empty")
    if worktrees.parse_worktree_dir_name(name):
        raise ValueError(f"'{name}' looks like a task worktree name")
    path = Path(path).expanduser().resolve()
    if not path.is_dir():
        raise ValueError(f"Workspace path does not exist: {path}")
    if get_workspace(db, name):
        raise ValueError(f"Workspace already exists: {name}")

    db.execute(
        """INSERT INTO workspaces (name, path, repo_url, default_branch, has_prd)
           VALUES (?, ?, ?, ?, ?)""",
        (name, str(path), repo_url, default_branch, int(_has_prd(path))),
    )
    db.commit()
    logger.info("Registered workspace %s at %s", name, path)
    return get_workspace(db, name)


def get_workspace(db: sqlite3.Connection, name: str) -> Workspace | None:
    row = db.execute("SELECT * FROM workspaces WHERE name = ?", (name,)).fetchone()
    if not row:
        return None
    return _row_to_workspace(row)


def require_workspace(db: sqlite3.Connection, name: str) -> Workspace:
    if not name or not name.strip():
        raise ValueError("Workspace name cannot be empty")
    workspace = get_workspace(db, name)
    if not workspace:
        raise ValueError(f"Workspace not found: {name}")
    return workspace


def list_workspaces(db: sqlite3.Connection, config: Config | None = None) -> list[Workspace]:
    """List registered workspaces.

    With a config, repositories found under the workspaces directory are
    registered first, PRD presence is refreshed, and orphaned task worktrees
    are swept.
    """
    if config is not None:
        discover_workspaces(db, config.workspaces_dir)

    workspaces = [
        _row_to_workspace(r)
        for r in db.execute("SELECT * FROM workspaces ORDER BY name").fetchall()
    ]
    for ws in workspaces:
        has_prd = _has_prd(Path(ws.path))
        if has_prd != ws.has_prd:
            db.execute(
                "UPDATE workspaces SET has_prd = ?, updated_at = datetime('now') WHERE name = ?",
                (int(has_prd), ws.name),
            )
            ws.has_prd = has_prd
    db.commit()

    if config is not None:
        search_dirs = [Path(config.workspaces_dir)]
        search_dirs += [Path(ws.path).parent for ws in workspaces]
        worktrees.sweep_orphans(db, {ws.name for ws in workspaces}, search_dirs)

    return workspaces


def discover_workspaces(db: sqlite3.Connection, workspaces_dir: str | Path) -> list[Workspace]:
    """Register git repositories under `workspaces_dir` not yet known."""
    base = Path(workspaces_dir)
    if not base.is_dir():
        return []

    known_paths = {
        str(Path(r["path"]).resolve())
        for r in db.execute("SELECT path FROM workspaces").fetchall()
    }
    added = []
    for entry in sorted(base.iterdir()):
        if not entry.is_dir() or worktrees.parse_worktree_dir_name(entry.name):
            continue
        if not (entry / ".git").exists():
            continue
        if str(entry.resolve()) in known_paths or get_workspace(db, entry.name):
            continue
        added.append(register_workspace(db, entry.name, entry))
    return added


def delete_workspace(
    db: sqlite3.Connection,
    name: str,
    delete_files: bool = False,
    vcs: GitClient | None = None,
) -> bool:
    """Unregister a workspace, destroying its worktrees and dropping its tasks.

    Worktrees that could not be removed keep their records; once the
    workspace is gone the orphan sweep retries them.
    """
    workspace = get_workspace(db, name)
    if not workspace:
        return False

    worktrees.destroy_all_for_workspace(db, workspace, vcs=vcs)
    db.execute("DELETE FROM workspaces WHERE name = ?", (name,))
    db.commit()

    if delete_files:
        path = Path(workspace.path)
        if path.exists():
            shutil.rmtree(path)
            logger.info("Deleted workspace files at %s", path)
    return True


def is_valid_git_url(url: str) -> bool:
    url = url.strip()
    if not url:
        return False
    if url.startswith("https://") or url.startswith("ssh://"):
        return True
    return url.startswith("git@") and ":" in url


def extract_repo_name(url: str) -> str:
    """`https://github.com/user/repo.git` -> `repo`. Empty if unrecognised."""
    url = url.strip().rstrip("/")
    if not is_valid_git_url(url):
        return ""
    if url.startswith("git@"):
        url = url.split(":", 1)[1]
    name = url.rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name


def clone_workspace(
    db: sqlite3.Connection,
    url: str,
    workspaces_dir: str | Path,
    vcs: GitClient | None = None,
) -> Workspace:
    """Clone a repository into the workspaces directory and register it."""
    if not is_valid_git_url(url):
        raise ValueError("Invalid Git repository URL. Provide an HTTPS or SSH URL.")
    name = extract_repo_name(url)
    if not name:
        raise ValueError("Could not extract repository name from URL")

    target = Path(workspaces_dir) / name
    if target.exists():
        raise ValueError(f"Repository directory already exists: {target}")
    target.parent.mkdir(parents=True, exist_ok=True)

    vcs = vcs or GitClient()
    vcs.clone(url.strip(), target)

    try:
        default_branch = vcs.current_branch(target) or "main"
    except GitError:
        default_branch = "main"

    existing = get_workspace(db, name)
    if existing:
        db.execute(
            """UPDATE workspaces SET path = ?, repo_url = ?, default_branch = ?, has_prd = ?,
               updated_at = datetime('now') WHERE name = ?""",
            (str(target.resolve()), url.strip(), default_branch, int(_has_prd(target)), name),
        )
        db.commit()
        return get_workspace(db, name)
    return register_workspace(db, name, target, repo_url=url.strip(), default_branch=default_branch)


def list_branches(
    db: sqlite3.Connection,
    name: str,
    remote: str = "origin",
    vcs: GitClient | None = None,
) -> list[BranchInfo]:
    """Branches an operator can pick as a task's base branch."""
    workspace = require_workspace(db, name)
    vcs = vcs or GitClient()
    return vcs.list_branches(workspace.path, remote=remote)


def workspace_to_dict(workspace: Workspace) -> dict:
    return {
        "name": workspace.name,
        "path": workspace.path,
        "repo_url": workspace.repo_url,
        "default_branch": workspace.default_branch,
        "has_prd": workspace.has_prd,
        "prd_path": workspace.prd_path,
    }


def _has_prd(path: Path) -> bool:
    return (path / PRD_FILENAME).is_file()


def _row_to_workspace(row: sqlite3.Row) -> Workspace:
    return Workspace(
        name=row["name"],
        path=row["path"],
        repo_url=row["repo_url"] or "",
        default_branch=row["default_branch"] or "main",
        has_prd=bool(row["has_prd"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
