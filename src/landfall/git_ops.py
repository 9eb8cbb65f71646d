from __future__ import annotations

from pathlib import Path
import logging
import re

from landfall.observability import log_event
from landfall.shell import CommandError, run, succeeds


LOGGER = logging.getLogger("landfall.git_ops")
_GITHUB_REMOTE_RE = re.compile(r"github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$")


class LocalRepository:
    """The working tree the session ran in, driven through ``git -C``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _git(self, *args: str) -> list[str]:
        return ["git", "-C", str(self.path), *args]

    def is_repository(self) -> bool:
        return succeeds(self._git("rev-parse", "--git-dir"))

    def current_branch(self) -> str:
        return run(self._git("rev-parse", "--abbrev-ref", "HEAD")).strip()

    def head_sha(self) -> str:
        return run(self._git("rev-parse", "HEAD")).strip()

    def default_branch(self, *, fallback: str = "main") -> str:
        try:
            raw = run(self._git("symbolic-ref", "--short", "refs/remotes/origin/HEAD")).strip()
        except CommandError:
            raw = ""
        if raw.startswith("origin/") and len(raw) > len("origin/"):
            return raw[len("origin/") :]

        output = run(self._git("remote", "show", "origin"), check=False)
        for line in output.splitlines():
            label, sep, value = line.partition(":")
            if sep and label.strip() == "HEAD branch" and value.strip() not in {"", "(unknown)"}:
                return value.strip()
        return fallback

    def remote_full_name(self) -> str | None:
        remote_url = run(self._git("remote", "get-url", "origin"), check=False).strip()
        match = _GITHUB_REMOTE_RE.search(remote_url)
        if match is None:
            return None
        return f"{match.group(1)}/{match.group(2)}"

    def changed_paths(self) -> tuple[str, ...]:
        status = run(self._git("status", "--porcelain"))
        paths: list[str] = []
        for line in status.splitlines():
            if len(line) < 4:
                continue
            entry = line[3:]
            if " -> " in entry:
                entry = entry.split(" -> ", 1)[1]
            paths.append(entry.strip().strip('"'))
        return tuple(paths)

    def has_uncommitted_changes(self) -> bool:
        return bool(self.changed_paths())

    def stash(self, message: str) -> None:
        log_event(LOGGER, "git_stash", path=str(self.path))
        run(self._git("stash", "push", "--include-untracked", "-m", message))

    def checkout(self, branch: str) -> None:
        log_event(LOGGER, "git_checkout", path=str(self.path), branch=branch)
        run(self._git("checkout", branch))

    def pull(self, branch: str) -> bool:
        log_event(LOGGER, "git_pull", path=str(self.path), branch=branch)
        try:
            run(self._git("pull", "origin", branch))
        except CommandError as exc:
            log_event(
                LOGGER,
                "git_pull_failed",
                path=str(self.path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            return False
        return True

    def abort_merge(self) -> bool:
        return succeeds(self._git("merge", "--abort"))

    def take_remote_versions(self) -> bool:
        """Resolve a failed pull by keeping the remote side of every conflict."""
        log_event(LOGGER, "git_take_remote_versions", path=str(self.path))
        if not succeeds(self._git("checkout", "--theirs", "--", ".")):
            return False
        if not succeeds(self._git("add", "-A")):
            return False
        return succeeds(self._git("commit", "--no-edit"))

    def delete_local_branch(self, branch: str) -> bool:
        log_event(LOGGER, "git_branch_delete", path=str(self.path), branch=branch)
        return succeeds(self._git("branch", "-D", branch))

    def delete_remote_tracking_ref(self, branch: str) -> bool:
        return succeeds(self._git("branch", "-dr", f"origin/{branch}"))

    def commit_all(self, message: str) -> bool:
        run(self._git("add", "-A"))
        staged = run(self._git("diff", "--cached", "--name-only")).strip()
        if not staged:
            return False
        log_event(
            LOGGER,
            "git_commit",
            path=str(self.path),
            has_message=bool(message.strip()),
            file_count=len(staged.splitlines()),
        )
        run(self._git("commit", "-m", message))
        return True

    def push_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_push", path=str(self.path), branch=branch)
        try:
            run(self._git("push", "-u", "origin", branch))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_push_failed",
                path=str(self.path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def commits_since(self, base_branch: str, *, limit: int = 20) -> tuple[str, ...]:
        output = run(
            self._git("log", "--oneline", f"-{limit}", f"{base_branch}..HEAD"), check=False
        )
        return tuple(line for line in output.splitlines() if line.strip())
