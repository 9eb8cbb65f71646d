from __future__ import annotations

from dataclasses import replace
import io
from pathlib import Path
import threading

from hypothesis import given, strategies as st
import pytest

from landfall.cleanup import CleanupReport
from landfall.config import MergeConfig
from landfall.merge_orchestrator import (
    EXIT_ALREADY_MERGED,
    EXIT_BLOCKED,
    EXIT_CLOSED_UNMERGED,
    EXIT_NOT_FOUND,
    EXIT_OK,
    EXIT_SIGNAL,
    ChangeRequestNotFoundError,
    ChangesRequestedError,
    ChecksFailedError,
    ChecksTimedOutError,
    ClosedUnmergedError,
    CompletionError,
    CompletionResult,
    ConflictingError,
    MergeFailedError,
    MergeOrchestrator,
    NotMergedError,
    ReviewRequiredError,
    classify_checks,
)
from landfall.models import ChangeRequest, CheckRun
from landfall.observability import Console
from landfall.poll_loop import Blocked, Continue, Done
from landfall.session import SessionContext
from landfall.shell import CommandError
from landfall.signals import SignalChannel, parse_signals


_GREEN = CheckRun(name="ci", status="COMPLETED", conclusion="SUCCESS")
_PENDING = CheckRun(name="ci", status="IN_PROGRESS", conclusion=None)
_RED = CheckRun(name="ci", status="COMPLETED", conclusion="FAILURE")


def _cr(**overrides: object) -> ChangeRequest:
    base = ChangeRequest(
        number=42,
        url="https://github.com/o/r/pull/42",
        state="OPEN",
        merged_at=None,
        mergeable="MERGEABLE",
        review_decision="APPROVED",
        check_runs=(_GREEN,),
        viewer_can_admin_merge=False,
        head_branch="feat/x",
        base_branch="main",
    )
    return replace(base, **overrides)  # type: ignore[arg-type]


class FakeGitHub:
    def __init__(self, snapshots: list[ChangeRequest], *, number: int | None = 42) -> None:
        self.snapshots = list(snapshots)
        self.number = number
        self.merges: list[tuple[int, bool]] = []
        self.merge_error: CommandError | None = None
        self.fetches = 0

    def find_change_request(self, branch: str) -> int | None:
        _ = branch
        return self.number

    def get_change_request(self, number: int) -> ChangeRequest:
        _ = number
        self.fetches += 1
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return self.snapshots[0]

    def merge_change_request(self, number: int, *, admin: bool = False) -> None:
        if self.merge_error is not None:
            raise self.merge_error
        self.merges.append((number, admin))


class FakeCleanup:
    def __init__(self) -> None:
        self.runs: list[tuple[str, str]] = []

    def run(self, branch: str, default_branch: str, session: SessionContext) -> CleanupReport:
        _ = session
        self.runs.append((branch, default_branch))
        return CleanupReport(
            stashed=False,
            pulled=True,
            remote_preferred=False,
            branch_deleted=True,
            remote_ref_deleted=True,
        )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class Harness:
    def __init__(
        self,
        snapshots: list[ChangeRequest],
        *,
        number: int | None = 42,
        issue_id: str | None = None,
        config: MergeConfig | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.github = FakeGitHub(snapshots, number=number)
        self.cleanup = FakeCleanup()
        self.clock = FakeClock()
        self.out = io.StringIO()
        self.signals = SignalChannel(self.out)
        self.orchestrator = MergeOrchestrator(
            github=self.github,  # type: ignore[arg-type]
            cleanup=self.cleanup,  # type: ignore[arg-type]
            session=SessionContext(
                root=Path("/repo"), state_dir=Path("/repo/.landfall"), tracked_issue_id=issue_id
            ),
            signals=self.signals,
            console=Console(self.out, error_stream=self.out, color=False),
            config=config or MergeConfig(poll_interval_seconds=30, max_wait_seconds=300),
            default_branch="main",
            stop_event=stop_event,
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    def complete(self, **kwargs: bool) -> CompletionResult:
        return self.orchestrator.complete("feat/x", **kwargs)


def test_approved_green_pr_merges_once_and_cleans_up() -> None:
    harness = Harness([_cr()])

    result = harness.complete()

    assert result.outcome == "merged"
    assert result.exit_code == EXIT_OK
    assert result.pr_number == 42
    assert harness.github.merges == [(42, False)]
    assert harness.cleanup.runs == [("feat/x", "main")]
    assert harness.signals.emitted == ()
    assert result.cleanup is not None


def test_pending_checks_are_polled_until_green() -> None:
    harness = Harness([_cr(check_runs=(_PENDING,)), _cr(check_runs=(_PENDING,)), _cr()])

    result = harness.complete()

    assert result.exit_code == EXIT_OK
    assert harness.clock.sleeps == [30, 30]
    assert harness.github.fetches == 3
    assert "Checks pending" in harness.out.getvalue()


def test_review_required_without_admin_is_blocked() -> None:
    harness = Harness([_cr(review_decision="REVIEW_REQUIRED")])

    with pytest.raises(ReviewRequiredError) as exc_info:
        harness.complete()

    assert exc_info.value.exit_code == EXIT_BLOCKED
    assert harness.github.merges == []
    assert harness.cleanup.runs == []
    assert harness.signals.emitted == ()


def test_review_required_with_admin_emits_one_signal_and_stops() -> None:
    harness = Harness([_cr(review_decision="REVIEW_REQUIRED", viewer_can_admin_merge=True)])

    result = harness.complete()

    assert result.outcome == "awaiting_decision"
    assert result.exit_code == EXIT_SIGNAL
    assert harness.github.merges == []
    assert harness.cleanup.runs == []
    signals = parse_signals(harness.out.getvalue().splitlines())
    assert [signal.kind for signal in signals] == ["ADMIN_MERGE"]
    assert signals[0].as_dict() == {
        "pr_number": "42",
        "branch": "feat/x",
        "default_branch": "main",
    }


def test_admin_override_merges_with_admin_flag() -> None:
    harness = Harness([_cr(review_decision="REVIEW_REQUIRED", viewer_can_admin_merge=True)])

    result = harness.complete(admin_override=True)

    assert result.outcome == "merged"
    assert harness.github.merges == [(42, True)]
    assert harness.signals.emitted == ()
    assert "merged with admin override" in harness.out.getvalue()


def test_already_merged_pr_only_cleans_up() -> None:
    harness = Harness([_cr(state="MERGED", merged_at="2026-01-01T00:00:00Z")])

    first = harness.complete()
    second = harness.complete()

    assert first.outcome == second.outcome == "already_merged"
    assert first.exit_code == EXIT_ALREADY_MERGED
    assert harness.github.merges == []
    assert len(harness.cleanup.runs) == 2


def test_closed_unmerged_pr_is_rejected() -> None:
    harness = Harness([_cr(state="CLOSED")])

    with pytest.raises(ClosedUnmergedError) as exc_info:
        harness.complete()

    assert exc_info.value.exit_code == EXIT_CLOSED_UNMERGED
    assert harness.cleanup.runs == []


def test_missing_pr_is_not_found() -> None:
    harness = Harness([_cr()], number=None)

    with pytest.raises(ChangeRequestNotFoundError, match="No pull request found") as exc_info:
        harness.complete()

    assert exc_info.value.exit_code == EXIT_NOT_FOUND


@pytest.mark.parametrize("mergeable", ["CONFLICTING", "UNKNOWN"])
def test_unmergeable_pr_is_blocked(mergeable: str) -> None:
    harness = Harness([_cr(mergeable=mergeable)])

    with pytest.raises(ConflictingError):
        harness.complete()

    assert harness.github.merges == []


def test_changes_requested_is_blocked_even_for_admins() -> None:
    harness = Harness(
        [_cr(review_decision="CHANGES_REQUESTED", viewer_can_admin_merge=True)]
    )

    with pytest.raises(ChangesRequestedError):
        harness.complete(admin_override=True)

    assert harness.github.merges == []


def test_failing_checks_block_without_merge() -> None:
    harness = Harness([_cr(check_runs=(_GREEN, replace(_RED, name="lint")))])

    with pytest.raises(ChecksFailedError, match="lint"):
        harness.complete()

    assert harness.github.merges == []
    assert harness.clock.sleeps == []


def test_checks_that_never_finish_time_out() -> None:
    harness = Harness(
        [_cr(check_runs=(_PENDING,))],
        config=MergeConfig(poll_interval_seconds=60, max_wait_seconds=120),
    )

    with pytest.raises(ChecksTimedOutError) as exc_info:
        harness.complete()

    assert exc_info.value.exit_code == EXIT_BLOCKED
    assert harness.clock.sleeps == [60, 60]
    assert harness.github.merges == []


def test_stop_event_cancels_the_wait() -> None:
    stop = threading.Event()
    stop.set()
    harness = Harness([_cr(check_runs=(_PENDING,))], stop_event=stop)

    with pytest.raises(CompletionError, match="Stopped waiting"):
        harness.complete()

    assert harness.github.merges == []


def test_merged_externally_while_waiting_cleans_up() -> None:
    harness = Harness(
        [_cr(check_runs=(_PENDING,)), _cr(state="MERGED", merged_at="2026-01-01T00:00:00Z")]
    )

    result = harness.complete()

    assert result.outcome == "already_merged"
    assert harness.github.merges == []


def test_merged_externally_with_checks_still_pending_cleans_up() -> None:
    harness = Harness(
        [
            _cr(check_runs=(_PENDING,)),
            _cr(state="MERGED", merged_at="2026-01-01T00:00:00Z", check_runs=(_PENDING,)),
        ]
    )

    result = harness.complete()

    assert result.outcome == "already_merged"
    assert result.exit_code == EXIT_ALREADY_MERGED
    assert harness.clock.sleeps == [30]
    assert harness.github.merges == []
    assert harness.cleanup.runs == [("feat/x", "main")]


def test_closed_while_waiting_is_rejected_without_merge() -> None:
    harness = Harness([_cr(check_runs=(_PENDING,)), _cr(state="CLOSED")])

    with pytest.raises(ClosedUnmergedError, match="closed while waiting") as exc_info:
        harness.complete()

    assert exc_info.value.exit_code == EXIT_CLOSED_UNMERGED
    assert harness.github.merges == []
    assert harness.cleanup.runs == []


@pytest.mark.parametrize("state", ["MERGED", "CLOSED"])
def test_classify_checks_settles_on_final_state(state: str) -> None:
    change_request = _cr(state=state, check_runs=(_PENDING, _RED))

    assert classify_checks(change_request) == Done(change_request)


def test_merge_failure_is_blocked_and_skips_cleanup() -> None:
    harness = Harness([_cr()])
    harness.github.merge_error = CommandError("Command failed", stderr="base branch policy")

    with pytest.raises(MergeFailedError, match="base branch policy"):
        harness.complete()

    assert harness.cleanup.runs == []


def test_skip_merge_on_open_pr_is_refused() -> None:
    harness = Harness([_cr()])

    with pytest.raises(NotMergedError):
        harness.complete(skip_merge=True)

    assert harness.cleanup.runs == []


def test_skip_merge_on_merged_pr_resumes_cleanup() -> None:
    harness = Harness([_cr(state="MERGED", merged_at="2026-01-01T00:00:00Z")])

    result = harness.complete(skip_merge=True)

    assert result.outcome == "resumed"
    assert result.exit_code == EXIT_OK
    assert harness.cleanup.runs == [("feat/x", "main")]


def test_skip_merge_on_closed_pr_is_rejected() -> None:
    harness = Harness([_cr(state="CLOSED")])

    with pytest.raises(ClosedUnmergedError):
        harness.complete(skip_merge=True)


def test_tracked_issue_emits_status_question_after_merge() -> None:
    harness = Harness([_cr()], issue_id="proj-7")

    result = harness.complete()

    assert result.exit_code == EXIT_OK
    signals = parse_signals(harness.out.getvalue().splitlines())
    assert [signal.kind for signal in signals] == ["ISSUE_STATUS"]
    assert signals[0].get("id") == "proj-7"
    assert signals[0].get("pr_number") == "42"
    assert harness.cleanup.runs == [("feat/x", "main")]


_check_runs = st.builds(
    CheckRun,
    name=st.sampled_from(["lint", "test", "build"]),
    status=st.sampled_from(["COMPLETED", "IN_PROGRESS", "QUEUED", "PENDING"]),
    conclusion=st.sampled_from([None, "SUCCESS", "FAILURE", "SKIPPED", "NEUTRAL", "CANCELLED"]),
)


@given(checks=st.lists(_check_runs, max_size=6))
def test_classify_checks_failing_beats_pending(checks: list[CheckRun]) -> None:
    change_request = _cr(check_runs=tuple(checks))

    outcome = classify_checks(change_request)

    if any(check.is_failing for check in checks):
        assert isinstance(outcome, Blocked)
    elif any(check.is_pending for check in checks):
        assert isinstance(outcome, Continue)
        assert set(outcome.pending) <= {check.name for check in checks}
    else:
        assert isinstance(outcome, Done)
        assert outcome.result == change_request
