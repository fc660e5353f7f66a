"""Stage, commit, and push a worktree's changes to its task branch."""

import logging
from pathlib import Path

from agentboard.integrations.git import GitClient, GitError

logger = logging.getLogger(__name__)


def task_commit_message(task_id: int, title: str, description: str) -> str:
    """Commit message for the first run of a task."""
    message = f"feat: {title}\n\nTask #{task_id}: {title}"
    if description.strip():
        message += f"\n\n{description.strip()}"
    return message


def continuation_commit_message(instruction: str, files: list[str]) -> str:
    """Commit message for work done in a continued agent session."""
    lines = [
        "Update from continued agent session",
        "",
        f"User request: {instruction.strip()}",
    ]
    if files:
        lines += ["", "Files modified:"]
        lines += [f"- {f}" for f in files]
    return "\n".join(lines)


def stage_changes(worktree_path: str | Path, files: list[str], vcs: GitClient) -> None:
    """Stage `files`, falling back to staging everything.

    The fallback applies when no files are given or any one of them fails to
    stage (e.g. a path the agent reported but later deleted).
    """
    if not files:
        vcs.add_all(worktree_path)
        return

    failed = []
    for path in files:
        try:
            vcs.add(worktree_path, [path])
        except GitError as e:
            logger.warning("Failed to stage %s: %s", path, e.output)
            failed.append(path)

    if failed:
        logger.warning("Staging %d file(s) failed, falling back to staging all changes", len(failed))
        vcs.add_all(worktree_path)


def commit_and_push(
    worktree_path: str | Path,
    branch: str,
    message: str,
    files: list[str],
    remote: str = "origin",
    author_name: str = "Claude Code",
    author_email: str = "claude@anthropic.com",
    vcs: GitClient | None = None,
) -> str:
    """Stage, commit, and push. Any git failure propagates as GitError.

    A successful commit followed by a failed push leaves the commit in
    place; the caller retries the push manually.
    """
    vcs = vcs or GitClient()
    stage_changes(worktree_path, files, vcs)
    vcs.commit(worktree_path, message, author_name, author_email)
    output = vcs.push(worktree_path, remote, branch)
    logger.info("Pushed %s to %s", branch, remote)
    return output
