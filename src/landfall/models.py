from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


ChangeRequestState = Literal["OPEN", "MERGED", "CLOSED"]
Mergeable = Literal["MERGEABLE", "CONFLICTING", "UNKNOWN"]
ReviewDecision = Literal["APPROVED", "REVIEW_REQUIRED", "CHANGES_REQUESTED", "NONE"]

PENDING_CHECK_STATUSES = frozenset(
    {"QUEUED", "IN_PROGRESS", "PENDING", "WAITING", "REQUESTED", "EXPECTED"}
)
FAILING_CHECK_CONCLUSIONS = frozenset(
    {"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "STARTUP_FAILURE", "ACTION_REQUIRED"}
)


@dataclass(frozen=True)
class CheckRun:
    name: str
    status: str
    conclusion: str | None

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_CHECK_STATUSES

    @property
    def is_failing(self) -> bool:
        return self.conclusion in FAILING_CHECK_CONCLUSIONS


@dataclass(frozen=True)
class ChangeRequest:
    number: int
    url: str
    state: ChangeRequestState
    merged_at: str | None
    mergeable: Mergeable
    review_decision: ReviewDecision
    check_runs: tuple[CheckRun, ...]
    viewer_can_admin_merge: bool
    head_branch: str = ""
    base_branch: str = ""

    @property
    def was_merged(self) -> bool:
        if self.state == "MERGED":
            return True
        return self.state == "CLOSED" and bool(self.merged_at)


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class Workspace:
    workspace_id: str
    name: str
    repo_identifier: str | None
    organization: str | None = None


@dataclass(frozen=True)
class AutomationRun:
    run_id: str
    workspace_id: str | None
    status: str
    is_confirmable: bool
    commit_sha: str | None
    plan_id: str | None = None
    can_apply: bool = False
