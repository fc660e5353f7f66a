"""Git worktree lifecycle management tied to tasks.

Each task runs in a sibling directory of its workspace named
`task-{id}-{workspace}` on a branch named `task-{id}-{slug}`. Both names are
read back from disk by older tooling, so they must not change.
"""

import glob
import logging
import re
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path

from agentboard.core import tasks as task_store
from agentboard.db.models import Workspace, WorktreeRecord
from agentboard.integrations.git import GitClient, GitError

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 40

_DIR_NAME_RE = re.compile(r"^task-(\d+)-(.+)$")


class WorktreeError(Exception):
    """Raised when a worktree cannot be created or removed."""


def slugify(title: str) -> str:
    slug = []
    for ch in title.lower():
        if ch in " _./\\":
            slug.append("-")
        elif ("a" <= ch <= "z") or ("0" <= ch <= "9") or ch == "-":
            slug.append(ch)
    return "".join(slug)[:SLUG_MAX_LENGTH].rstrip("-")


def branch_name(task_id: int, title: str) -> str:
    """`branch_name(7, "Fix Login Bug!!") == "task-7-fix-login-bug"`."""
    return f"task-{task_id}-{slugify(title)}"


def worktree_dir_name(task_id: int, workspace_name: str) -> str:
    return f"task-{task_id}-{workspace_name}"


def parse_worktree_dir_name(name: str) -> tuple[int, str] | None:
    """Split `task-{id}-{workspace}` into (id, workspace), or None."""
    m = _DIR_NAME_RE.match(name)
    if not m:
        return None
    return int(m.group(1)), m.group(2)


def worktree_path_for(workspace: Workspace, task_id: int) -> Path:
    return Path(workspace.path).parent / worktree_dir_name(task_id, workspace.name)


def create_worktree(
    db: sqlite3.Connection,
    workspace: Workspace,
    task_id: int,
    title: str,
    base_branch: str,
    remote: str = "origin",
    vcs: GitClient | None = None,
) -> tuple[str, str]:
    """Create a fresh worktree for a task. Returns (branch_name, worktree_path).

    Any worktree or branch left over from a previous run of the same task is
    torn down first, so re-running a task never trips over a branch that is
    already checked out.
    """
    if not workspace.name or not workspace.path:
        raise ValueError("Workspace name and path are required")
    if task_id <= 0:
        raise ValueError("Task ID must be a positive integer")
    if not base_branch or not base_branch.strip():
        raise ValueError("Base branch is required")

    vcs = vcs or GitClient()
    repo = Path(workspace.path)

    vcs.fetch(repo, remote)

    branch = branch_name(task_id, title)
    wt_path = worktree_path_for(workspace, task_id)

    # Expire the old binding before teardown deletes what it points at.
    task_store.clear_worktree_binding(db, workspace.name, task_id)
    db.execute("DELETE FROM worktrees WHERE workspace = ? AND task_id = ?", (workspace.name, task_id))
    db.commit()

    _teardown(vcs, repo, wt_path, branch)
    _resolve_base_branch(vcs, repo, remote, base_branch)

    vcs.worktree_add(repo, wt_path, branch, base_branch)
    if not (wt_path / ".git").exists():
        raise WorktreeError(f"Worktree created but .git metadata is missing in {wt_path}")

    try:
        vcs.pull(wt_path, remote, base_branch)
    except GitError as e:
        logger.warning("Could not pull %s into %s: %s", base_branch, wt_path, e.output)

    db.execute("DELETE FROM worktrees WHERE workspace = ? AND task_id = ?", (workspace.name, task_id))
    db.execute(
        """INSERT OR REPLACE INTO worktrees (path, workspace, task_id, branch, base_branch)
           VALUES (?, ?, ?, ?, ?)""",
        (str(wt_path), workspace.name, task_id, branch, base_branch),
    )
    db.commit()
    task_store.bind_worktree(db, workspace.name, task_id, branch, str(wt_path))

    logger.info("Created worktree %s on branch %s", wt_path, branch)
    return branch, str(wt_path)


def destroy_worktree(
    db: sqlite3.Connection,
    workspace: Workspace,
    task_id: int,
    vcs: GitClient | None = None,
) -> bool:
    """Remove a task's worktree. Returns False if it was already gone.

    The task's session binding is cleared whatever happens. Raises
    WorktreeError only when both `git worktree remove` and the directory
    delete fail; the metadata record is then kept so a later cleanup can
    retry.
    """
    vcs = vcs or GitClient()
    repo = Path(workspace.path)
    wt_path = worktree_path_for(workspace, task_id)
    record = get_worktree_record(db, str(wt_path))

    task_store.clear_worktree_binding(db, workspace.name, task_id)

    if not wt_path.exists():
        _forget(db, str(wt_path))
        return False

    branch = ""
    try:
        branch = vcs.current_branch(wt_path)
    except GitError as e:
        logger.warning("Could not read branch of %s: %s", wt_path, e.output)
    if not branch and record:
        branch = record.branch

    git_error = None
    try:
        vcs.worktree_remove(repo, wt_path, force=True)
    except GitError as e:
        git_error = e
        logger.warning("git worktree remove failed for %s: %s", wt_path, e.output)

    rm_error = None
    if wt_path.exists():
        try:
            shutil.rmtree(wt_path)
        except OSError as e:
            rm_error = e
            logger.warning("Could not delete %s: %s", wt_path, e)

    if git_error and rm_error:
        raise WorktreeError(f"Failed to remove worktree {wt_path}: {git_error}; {rm_error}")

    if branch.startswith(f"task-{task_id}-"):
        try:
            vcs.delete_branch(repo, branch, force=True)
        except GitError as e:
            logger.warning("Could not delete branch %s: %s", branch, e.output)

    try:
        vcs.worktree_prune(repo)
    except GitError as e:
        logger.warning("git worktree prune failed in %s: %s", repo, e.output)

    _forget(db, str(wt_path))
    logger.info("Removed worktree %s", wt_path)
    return True


def destroy_all_for_workspace(
    db: sqlite3.Connection,
    workspace: Workspace,
    vcs: GitClient | None = None,
) -> list[int]:
    """Destroy every task worktree of a workspace. Returns the task IDs removed."""
    vcs = vcs or GitClient()
    parent = Path(workspace.path).parent
    pattern = re.compile(rf"^task-(\d+)-{re.escape(workspace.name)}$")

    task_ids = {r.task_id for r in list_worktree_records(db, workspace.name)}
    for entry in parent.glob(f"task-*-{glob.escape(workspace.name)}"):
        m = pattern.match(entry.name)
        if m and entry.is_dir():
            task_ids.add(int(m.group(1)))

    removed = []
    for task_id in sorted(task_ids):
        try:
            if destroy_worktree(db, workspace, task_id, vcs=vcs):
                removed.append(task_id)
        except WorktreeError as e:
            logger.warning("Keeping worktree record for task %d: %s", task_id, e)
    return removed


def sweep_orphans(
    db: sqlite3.Connection,
    workspace_names: set[str],
    search_dirs: list[Path],
) -> list[str]:
    """Delete worktrees whose workspace is no longer registered.

    Recorded worktrees are checked against the registry directly. Directories
    nobody recorded fall back to the `task-{id}-{name}` naming convention.
    Returns the removed paths.
    """
    removed = []
    recorded = set()

    for record in list_worktree_records(db):
        recorded.add(str(Path(record.path).resolve()))
        if record.workspace in workspace_names:
            continue
        path = Path(record.path)
        if path.exists():
            logger.warning("Removing orphaned worktree %s (workspace '%s' is gone)", path, record.workspace)
            shutil.rmtree(path, ignore_errors=True)
        if not path.exists():
            _forget(db, record.path)
            removed.append(record.path)

    seen_dirs = set()
    for search_dir in search_dirs:
        search_dir = Path(search_dir)
        if search_dir in seen_dirs or not search_dir.is_dir():
            continue
        seen_dirs.add(search_dir)

        for entry in sorted(search_dir.iterdir()):
            parsed = parse_worktree_dir_name(entry.name)
            if not parsed or not entry.is_dir():
                continue
            _, name = parsed
            if name in workspace_names or entry.name in workspace_names:
                continue
            if str(entry.resolve()) in recorded:
                continue
            logger.warning("Removing orphaned worktree directory %s", entry)
            shutil.rmtree(entry, ignore_errors=True)
            if not entry.exists():
                removed.append(str(entry))

    return removed


def get_worktree_record(db: sqlite3.Connection, path: str) -> WorktreeRecord | None:
    row = db.execute("SELECT * FROM worktrees WHERE path = ?", (path,)).fetchone()
    return _row_to_record(row) if row else None


def list_worktree_records(db: sqlite3.Connection, workspace: str | None = None) -> list[WorktreeRecord]:
    if workspace:
        rows = db.execute(
            "SELECT * FROM worktrees WHERE workspace = ? ORDER BY task_id", (workspace,)
        ).fetchall()
    else:
        rows = db.execute("SELECT * FROM worktrees ORDER BY workspace, task_id").fetchall()
    return [_row_to_record(r) for r in rows]


def list_task_worktrees(
    db: sqlite3.Connection,
    workspace: Workspace,
    vcs: GitClient | None = None,
) -> list[dict]:
    """List the repository's git worktrees and match them to tasks."""
    vcs = vcs or GitClient()
    records = {r.path: r for r in list_worktree_records(db, workspace.name)}

    result = []
    for wt in vcs.worktree_list(workspace.path):
        if Path(wt.path).resolve() == Path(workspace.path).resolve():
            continue
        entry = {"path": wt.path, "branch": wt.branch, "head": wt.head}
        record = records.get(wt.path)
        if record is None:
            parsed = parse_worktree_dir_name(Path(wt.path).name)
            task_id = parsed[0] if parsed and parsed[1] == workspace.name else None
        else:
            task_id = record.task_id
        if task_id is not None:
            entry["task_id"] = task_id
            task = task_store.get_task(db, workspace.name, task_id)
            if task:
                entry["task_title"] = task.title
                entry["task_status"] = task.status.value
        result.append(entry)
    return result


def _teardown(vcs: GitClient, repo: Path, wt_path: Path, branch: str) -> None:
    target = wt_path.resolve()
    main = repo.resolve()

    try:
        existing = vcs.worktree_list(repo)
    except GitError as e:
        logger.warning("Could not list worktrees in %s: %s", repo, e.output)
        existing = []

    for wt in existing:
        path = Path(wt.path).resolve()
        if path == main:
            continue
        if wt.branch == branch or path == target:
            logger.info("Removing stale worktree %s (branch %s)", wt.path, wt.branch)
            try:
                vcs.worktree_remove(repo, wt.path, force=True)
            except GitError as e:
                logger.warning("Could not remove stale worktree %s: %s", wt.path, e.output)

    if wt_path.exists():
        shutil.rmtree(wt_path, ignore_errors=True)

    try:
        vcs.worktree_prune(repo)
    except GitError as e:
        logger.warning("git worktree prune failed in %s: %s", repo, e.output)

    if vcs.branch_exists(repo, branch):
        try:
            vcs.delete_branch(repo, branch, force=True)
        except GitError as e:
            logger.warning("Could not delete stale branch %s: %s", branch, e.output)


def _resolve_base_branch(vcs: GitClient, repo: Path, remote: str, base_branch: str) -> None:
    if vcs.branch_exists(repo, base_branch):
        return
    if vcs.remote_branch_exists(repo, remote, base_branch):
        vcs.create_branch(repo, base_branch, f"refs/remotes/{remote}/{base_branch}")
        return
    raise WorktreeError(f"Base branch '{base_branch}' not found locally or on {remote}")


def _forget(db: sqlite3.Connection, path: str) -> None:
    db.execute("DELETE FROM worktrees WHERE path = ?", (path,))
    db.commit()


def _row_to_record(row: sqlite3.Row) -> WorktreeRecord:
    return WorktreeRecord(
        path=row["path"],
        workspace=row["workspace"],
        task_id=row["task_id"],
        branch=row["branch"],
        base_branch=row["base_branch"],
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )
