"""Detect uncommitted changes in a worktree from `git status --porcelain`."""

import logging
from pathlib import Path

from agentboard.integrations.git import GitClient

logger = logging.getLogger(__name__)

_ESCAPES = {
    "a": b"\a",
    "b": b"\b",
    "f": b"\f",
    "n": b"\n",
    "r": b"\r",
    "t": b"\t",
    "v": b"\v",
    "\\": b"\\",
    '"': b'"',
}


def unquote_path(path: str) -> str:
    """Undo git's C-style quoting of paths with special characters.

    Git emits non-ASCII bytes as octal escapes, so the unescaped bytes are
    decoded as UTF-8 once the whole path has been collected.
    """
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path

    body = path[1:-1]
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 >= len(body):
            out += ch.encode("utf-8")
            i += 1
            continue
        nxt = body[i + 1]
        if nxt in _ESCAPES:
            out += _ESCAPES[nxt]
            i += 2
        elif nxt in "01234567":
            digits = body[i + 1:i + 4]
            out.append(int(digits, 8) & 0xFF)
            i += 1 + len(digits)
        else:
            out += nxt.encode("utf-8")
            i += 2
    return out.decode("utf-8", errors="replace")


def parse_status(output: str) -> list[str]:
    """Turn porcelain status output into the list of changed paths.

    Each line is a two-character status code, a space, then the path. The
    path is taken by position since it may itself contain spaces. Renames
    (`old -> new`) resolve to the new path.
    """
    files = []
    for line in output.splitlines():
        if not line.strip() or len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = unquote_path(path)
        if path:
            files.append(path)
    return files


def detect_changes(worktree_path: str | Path, vcs: GitClient | None = None) -> tuple[bool, list[str]]:
    """Return (has_changes, changed_files) for a worktree."""
    vcs = vcs or GitClient()
    files = parse_status(vcs.status_porcelain(worktree_path))
    logger.debug("Detected %d changed file(s) in %s", len(files), worktree_path)
    return bool(files), files
