from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Literal

from landfall.cleanup import CleanupReport, CleanupStage
from landfall.config import MergeConfig
from landfall.github_gateway import GitHubGateway
from landfall.models import ChangeRequest
from landfall.observability import Console, log_event
from landfall.poll_loop import (
    Blocked,
    Classification,
    Continue,
    Done,
    PollProgress,
    format_elapsed,
    poll_until,
)
from landfall.session import SessionContext
from landfall.shell import CommandError, summarize_error
from landfall.signals import SignalChannel, admin_merge_signal, issue_status_signal


LOGGER = logging.getLogger("landfall.merge_orchestrator")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_ALREADY_MERGED = 3
EXIT_CLOSED_UNMERGED = 4
EXIT_BLOCKED = 5
EXIT_SIGNAL = 6

PlanAction = Literal[
    "merge", "admin_merge", "cleanup_only", "resume_cleanup", "await_admin_decision"
]
CompletionOutcome = Literal["merged", "already_merged", "resumed", "awaiting_decision"]


class CompletionError(RuntimeError):
    exit_code = EXIT_ERROR


class ChangeRequestNotFoundError(CompletionError):
    exit_code = EXIT_NOT_FOUND


class ClosedUnmergedError(CompletionError):
    exit_code = EXIT_CLOSED_UNMERGED


class NotMergedError(CompletionError):
    """Cleanup-only resumption was requested while the change request is still open."""


class MergeBlockedError(CompletionError):
    exit_code = EXIT_BLOCKED


class ChecksFailedError(MergeBlockedError):
    pass


class ChecksTimedOutError(MergeBlockedError):
    pass


class ConflictingError(MergeBlockedError):
    pass


class ChangesRequestedError(MergeBlockedError):
    pass


class ReviewRequiredError(MergeBlockedError):
    pass


class MergeFailedError(MergeBlockedError):
    pass


@dataclass(frozen=True)
class MergePlan:
    action: PlanAction
    branch: str
    change_request: ChangeRequest


@dataclass(frozen=True)
class CompletionResult:
    outcome: CompletionOutcome
    exit_code: int
    pr_number: int
    cleanup: CleanupReport | None = None


def classify_checks(change_request: ChangeRequest) -> Classification[ChangeRequest]:
    """A merged or closed change request settles the wait; then failing beats pending.

    An empty check set is complete.
    """
    if change_request.state != "OPEN":
        return Done(change_request)
    failing = [check.name for check in change_request.check_runs if check.is_failing]
    if failing:
        return Blocked(reason=f"failing: {', '.join(failing)}")
    pending = tuple(check.name for check in change_request.check_runs if check.is_pending)
    if pending:
        return Continue(pending=pending)
    return Done(change_request)


class MergeOrchestrator:
    def __init__(
        self,
        *,
        github: GitHubGateway,
        cleanup: CleanupStage,
        session: SessionContext,
        signals: SignalChannel,
        console: Console,
        config: MergeConfig,
        default_branch: str,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._github = github
        self._cleanup = cleanup
        self._session = session
        self._signals = signals
        self._console = console
        self._config = config
        self._default_branch = default_branch
        self._stop_event = stop_event
        self._clock = clock
        self._sleep = sleep

    def complete(
        self, branch: str, *, skip_merge: bool = False, admin_override: bool = False
    ) -> CompletionResult:
        plan = self.evaluate(branch, skip_merge=skip_merge, admin_override=admin_override)
        return self.apply(plan)

    def evaluate(
        self, branch: str, *, skip_merge: bool = False, admin_override: bool = False
    ) -> MergePlan:
        pr_number = self._github.find_change_request(branch)
        if pr_number is None:
            raise ChangeRequestNotFoundError(
                f"No pull request found for branch {branch}; create one first"
            )
        change_request = self._github.get_change_request(pr_number)
        log_event(
            LOGGER,
            "change_request_resolved",
            branch=branch,
            pr_number=pr_number,
            state=change_request.state,
            skip_merge=skip_merge,
        )
        self._console.info(f"Found PR #{pr_number}")

        if skip_merge:
            if change_request.was_merged:
                return self._plan("resume_cleanup", branch, change_request)
            if change_request.state == "CLOSED":
                raise ClosedUnmergedError(f"PR #{pr_number} was closed without merging")
            raise NotMergedError(f"PR #{pr_number} is still open; cannot skip the merge")

        if change_request.was_merged:
            self._console.info(f"PR #{pr_number} is already merged")
            return self._plan("cleanup_only", branch, change_request)
        if change_request.state == "CLOSED":
            raise ClosedUnmergedError(f"PR #{pr_number} was closed without merging")

        change_request = self._wait_for_checks(change_request)
        if change_request.was_merged:
            # Merged by someone else while checks were settling.
            self._console.info(f"PR #{pr_number} was merged while waiting")
            return self._plan("cleanup_only", branch, change_request)
        if change_request.state == "CLOSED":
            raise ClosedUnmergedError(f"PR #{pr_number} was closed while waiting for checks")

        if change_request.mergeable != "MERGEABLE":
            detail = (
                "has conflicts"
                if change_request.mergeable == "CONFLICTING"
                else "has unknown mergeability"
            )
            raise ConflictingError(
                f"PR #{pr_number} {detail}; resolve it on GitHub and try again"
            )

        decision = change_request.review_decision
        if decision in {"APPROVED", "NONE"}:
            return self._plan("merge", branch, change_request)
        if decision == "CHANGES_REQUESTED":
            raise ChangesRequestedError(
                f"Changes have been requested on PR #{pr_number}; address the review first"
            )
        if not change_request.viewer_can_admin_merge:
            raise ReviewRequiredError(
                f"PR #{pr_number} requires an approving review and admin merge is not available"
            )
        if admin_override:
            return self._plan("admin_merge", branch, change_request)
        return self._plan("await_admin_decision", branch, change_request)

    def apply(self, plan: MergePlan) -> CompletionResult:
        pr_number = plan.change_request.number

        if plan.action == "await_admin_decision":
            self._signals.emit(
                admin_merge_signal(
                    pr_number=pr_number,
                    branch=plan.branch,
                    default_branch=self._default_branch,
                )
            )
            self._console.warn(
                f"PR #{pr_number} requires approval; admin access can bypass it. "
                "Waiting for a decision."
            )
            return CompletionResult(
                outcome="awaiting_decision", exit_code=EXIT_SIGNAL, pr_number=pr_number
            )

        if plan.action in {"merge", "admin_merge"}:
            admin = plan.action == "admin_merge"
            try:
                self._github.merge_change_request(pr_number, admin=admin)
            except CommandError as exc:
                raise MergeFailedError(
                    f"Failed to merge PR #{pr_number}: {summarize_error(exc)}"
                ) from exc
            self._console.info(f"PR #{pr_number} merged{' with admin override' if admin else ''}")
            outcome: CompletionOutcome = "merged"
            exit_code = EXIT_OK
        elif plan.action == "cleanup_only":
            outcome = "already_merged"
            exit_code = EXIT_ALREADY_MERGED
        else:
            outcome = "resumed"
            exit_code = EXIT_OK

        if self._session.tracked_issue_id:
            self._signals.emit(
                issue_status_signal(
                    issue_id=self._session.tracked_issue_id,
                    pr_number=pr_number,
                    default_branch=self._default_branch,
                )
            )

        report = self._cleanup.run(plan.branch, self._default_branch, self._session)
        return CompletionResult(
            outcome=outcome, exit_code=exit_code, pr_number=pr_number, cleanup=report
        )

    def _plan(self, action: PlanAction, branch: str, change_request: ChangeRequest) -> MergePlan:
        log_event(
            LOGGER,
            "merge_plan_ready",
            action=action,
            branch=branch,
            pr_number=change_request.number,
            review_decision=change_request.review_decision,
        )
        return MergePlan(action=action, branch=branch, change_request=change_request)

    def _wait_for_checks(self, change_request: ChangeRequest) -> ChangeRequest:
        pr_number = change_request.number
        initial: list[ChangeRequest] = [change_request]

        def fetch() -> Classification[ChangeRequest]:
            # The first tick reuses the snapshot that resolved the change request.
            snapshot = initial.pop() if initial else self._github.get_change_request(pr_number)
            return classify_checks(snapshot)

        result = poll_until(
            fetch,
            interval_seconds=self._config.poll_interval_seconds,
            max_wait_seconds=self._config.max_wait_seconds,
            on_progress=self._report_progress,
            stop_event=self._stop_event,
            clock=self._clock,
            sleep=self._sleep,
            label=f"checks_pr_{pr_number}",
        )
        log_event(LOGGER, "checks_classified", pr_number=pr_number, outcome=result.status)
        if result.status == "done" and result.result is not None:
            return result.result
        if result.status == "blocked":
            raise ChecksFailedError(f"Checks failed on PR #{pr_number} ({result.reason})")
        if result.status == "timed_out":
            raise ChecksTimedOutError(
                f"Checks on PR #{pr_number} did not finish: {result.reason}"
            )
        raise CompletionError(f"Stopped waiting for checks on PR #{pr_number}")

    def _report_progress(self, progress: PollProgress) -> None:
        elapsed = format_elapsed(progress.elapsed_seconds)
        if progress.pending:
            self._console.status(
                f"Checks pending ({elapsed} elapsed): {', '.join(progress.pending)}"
            )
        elif progress.transient_error:
            self._console.status(f"Status unavailable ({elapsed} elapsed), retrying")
        else:
            self._console.status(f"Waiting for checks ({elapsed} elapsed)")
