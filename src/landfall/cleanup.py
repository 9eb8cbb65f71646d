from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from landfall.config import PullConflictStrategy
from landfall.git_ops import LocalRepository
from landfall.observability import Console, log_event
from landfall.session import SessionContext


LOGGER = logging.getLogger("landfall.cleanup")


@dataclass(frozen=True)
class CleanupReport:
    stashed: bool
    pulled: bool
    remote_preferred: bool
    branch_deleted: bool
    remote_ref_deleted: bool


class CleanupStage:
    """Moves the working tree from a merged feature branch back to the mainline.

    Only ever invoked once the change request is known to be merged. Local
    changes are stashed, never discarded. A failed pull is handled by the
    configured strategy: ``abort`` keeps the local mainline as it was, while
    ``prefer_remote`` takes the remote side of every conflict and always says
    so on the console.
    """

    def __init__(
        self,
        repo: LocalRepository,
        *,
        console: Console,
        strategy: PullConflictStrategy = "abort",
    ) -> None:
        self._repo = repo
        self._console = console
        self._strategy = strategy

    def run(self, branch: str, default_branch: str, session: SessionContext) -> CleanupReport:
        self._console.status(f"Switching to {default_branch}...")

        stashed = False
        if self._repo.has_uncommitted_changes():
            stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
            self._repo.stash(f"Auto-stash before switching to {default_branch} ({stamp})")
            stashed = True
            self._console.warn("Stashed uncommitted changes (git stash list to inspect)")

        if self._repo.current_branch() != default_branch:
            self._repo.checkout(default_branch)

        pulled = self._repo.pull(default_branch)
        remote_preferred = False
        if pulled:
            self._console.info(f"Pulled latest {default_branch}")
        else:
            remote_preferred = self._handle_pull_failure(default_branch)

        branch_deleted = False
        remote_ref_deleted = False
        if branch and branch != default_branch:
            branch_deleted = self._repo.delete_local_branch(branch)
            if branch_deleted:
                self._console.info(f"Deleted local branch {branch}")
            else:
                self._console.warn(f"Could not delete local branch {branch}")
            remote_ref_deleted = self._repo.delete_remote_tracking_ref(branch)

        session.clear_markers()

        report = CleanupReport(
            stashed=stashed,
            pulled=pulled,
            remote_preferred=remote_preferred,
            branch_deleted=branch_deleted,
            remote_ref_deleted=remote_ref_deleted,
        )
        log_event(
            LOGGER,
            "cleanup_completed",
            branch=branch,
            default_branch=default_branch,
            stashed=report.stashed,
            pulled=report.pulled,
            remote_preferred=report.remote_preferred,
            branch_deleted=report.branch_deleted,
        )
        return report

    def _handle_pull_failure(self, default_branch: str) -> bool:
        if self._strategy == "prefer_remote":
            if self._repo.take_remote_versions():
                LOGGER.warning(
                    "event=pull_conflict_resolved_prefer_remote default_branch=%s",
                    default_branch,
                )
                self._console.warn(
                    f"Pull of {default_branch} conflicted; took the remote version of every "
                    "conflicting file. Local edits in those files were overwritten "
                    "(check git stash list and git reflog)."
                )
                return True
            self._repo.abort_merge()
            self._console.warn(
                f"Pull of {default_branch} conflicted and could not be resolved; "
                "left local state unchanged"
            )
            return False

        self._repo.abort_merge()
        LOGGER.warning("event=pull_aborted default_branch=%s", default_branch)
        self._console.warn(
            f"Pull of {default_branch} failed; aborted the merge and kept local state. "
            f"Run: git pull origin {default_branch}"
        )
        return False
