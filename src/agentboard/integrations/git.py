"""Git subprocess wrappers for worktree, branch, and publish operations."""

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from agentboard.db.models import BranchInfo


class GitError(Exception):
    """Raised when a git command fails. Carries the tool's raw output."""

    def __init__(self, args: list[str], returncode: int, output: str):
        self.git_args = args
        self.returncode = returncode
        self.output = output
        super().__init__(f"git {' '.join(args)} failed (exit {returncode}): {output}")


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    head: str
    is_bare: bool = False


def run_git(
    args: list[str],
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    strip: bool = True,
) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            env={**os.environ, **env} if env else None,
        )
    except subprocess.CalledProcessError as e:
        output = "\n".join(p.strip() for p in (e.stdout, e.stderr) if p and p.strip())
        raise GitError(args, e.returncode, output) from e
    except FileNotFoundError as e:
        raise GitError(args, 127, str(e)) from e
    return result.stdout.strip() if strip else result.stdout


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output."""
    worktrees = []
    current: dict = {}

    def flush():
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=current.get("worktree", ""),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    head=current.get("HEAD", ""),
                    is_bare=current.get("bare", False),
                )
            )

    for line in output.split("\n"):
        if not line:
            flush()
            current = {}
            continue

        if line.startswith("worktree "):
            current["worktree"] = line[len("worktree "):]
        elif line.startswith("HEAD "):
            current["HEAD"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):]
        elif line == "bare":
            current["bare"] = True

    flush()
    return worktrees


class GitClient:
    """The narrow set of git operations the engine needs.

    Every method shells out to git. Tests substitute an object with the
    same methods to run the engine without a repository.
    """

    def fetch(self, repo_path: str | Path, remote: str) -> str:
        return run_git(["fetch", remote], cwd=repo_path)

    def clone(self, url: str, dest: str | Path) -> str:
        return run_git(["clone", url, str(dest)])

    def worktree_list(self, repo_path: str | Path) -> list[WorktreeInfo]:
        return parse_worktree_list(run_git(["worktree", "list", "--porcelain"], cwd=repo_path))

    def worktree_add(
        self,
        repo_path: str | Path,
        worktree_path: str | Path,
        branch: str,
        base_branch: str,
    ) -> str:
        return run_git(["worktree", "add", "-b", branch, str(worktree_path), base_branch], cwd=repo_path)

    def worktree_remove(self, repo_path: str | Path, worktree_path: str | Path, force: bool = True) -> str:
        args = ["worktree", "remove", str(worktree_path)]
        if force:
            args.append("--force")
        return run_git(args, cwd=repo_path)

    def worktree_prune(self, repo_path: str | Path) -> str:
        return run_git(["worktree", "prune"], cwd=repo_path)

    def branch_exists(self, repo_path: str | Path, branch: str) -> bool:
        return self._ref_exists(repo_path, f"refs/heads/{branch}")

    def remote_branch_exists(self, repo_path: str | Path, remote: str, branch: str) -> bool:
        return self._ref_exists(repo_path, f"refs/remotes/{remote}/{branch}")

    def create_branch(self, repo_path: str | Path, branch: str, start_point: str) -> str:
        return run_git(["branch", branch, start_point], cwd=repo_path)

    def delete_branch(self, repo_path: str | Path, branch: str, force: bool = True) -> str:
        flag = "-D" if force else "-d"
        return run_git(["branch", flag, branch], cwd=repo_path)

    def current_branch(self, cwd: str | Path) -> str:
        return run_git(["branch", "--show-current"], cwd=cwd)

    def list_branches(self, repo_path: str | Path, remote: str = "origin") -> list[BranchInfo]:
        """Local branches plus remote-only branches of `remote`."""
        try:
            current = self.current_branch(repo_path)
        except GitError:
            current = ""

        output = run_git(
            ["for-each-ref", "--format=%(refname)\t%(objectname:short=8)", "refs/heads", f"refs/remotes/{remote}"],
            cwd=repo_path,
        )
        local: list[BranchInfo] = []
        remote_only: list[BranchInfo] = []
        remote_prefix = f"refs/remotes/{remote}/"

        for line in output.splitlines():
            if "\t" not in line:
                continue
            ref, sha = line.split("\t", 1)
            if ref.startswith("refs/heads/"):
                name = ref[len("refs/heads/"):]
                local.append(BranchInfo(name=name, is_current=name == current, hash=sha))
            elif ref.startswith(remote_prefix):
                name = ref[len(remote_prefix):]
                if name != "HEAD":
                    remote_only.append(BranchInfo(name=name, is_remote=True, hash=sha))

        local_names = {b.name for b in local}
        return local + [b for b in remote_only if b.name not in local_names]

    def status_porcelain(self, cwd: str | Path) -> str:
        return run_git(["status", "--porcelain"], cwd=cwd, strip=False)

    def add(self, cwd: str | Path, paths: list[str]) -> str:
        return run_git(["add", "--"] + paths, cwd=cwd)

    def add_all(self, cwd: str | Path) -> str:
        return run_git(["add", "-A"], cwd=cwd)

    def commit(self, cwd: str | Path, message: str, author_name: str, author_email: str) -> str:
        env = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_COMMITTER_NAME": author_name,
            "GIT_COMMITTER_EMAIL": author_email,
        }
        return run_git(["commit", "-m", message], cwd=cwd, env=env)

    def push(self, cwd: str | Path, remote: str, branch: str) -> str:
        return run_git(["push", remote, branch], cwd=cwd)

    def pull(self, cwd: str | Path, remote: str, branch: str) -> str:
        return run_git(["pull", "--ff-only", remote, branch], cwd=cwd)

    def _ref_exists(self, repo_path: str | Path, ref: str) -> bool:
        try:
            run_git(["rev-parse", "--verify", "--quiet", ref], cwd=repo_path)
            return True
        except GitError:
            return False
