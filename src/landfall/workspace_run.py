"""Post-merge infrastructure run checks and approvals.

After a merge lands, the linked non-production Terraform Cloud workspace
usually starts a plan. ``WorkspaceRunOrchestrator.check_latest_run`` finds
that workspace, waits for planning to settle and reports what the human can
do next; ``approve`` confirms a run once the human has said yes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from pathlib import Path
import re
import threading
import time
from typing import Callable, Literal, Protocol, Sequence

from landfall.models import AutomationRun, Workspace
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
from landfall.signals import SignalChannel, apply_available_signal
from landfall.tfc_client import (
    TerraformCloudClient,
    TerraformCloudError,
    TerraformCloudPollingError,
)


LOGGER = logging.getLogger("landfall.workspace_run")

PLANNING_STATUSES = frozenset({"pending", "queued", "plan_queued", "planning"})
ERROR_STATUSES = frozenset({"errored", "canceled", "force_canceled", "discarded"})
AWAITING_APPROVAL_STATUSES = frozenset(
    {"planned", "cost_estimated", "policy_checked", "policy_soft_failed"}
)
FINISHED_STATUSES = frozenset({"applied", "planned_and_finished"})
APPLYING_STATUSES = frozenset({"applying", "apply_queued", "confirmed"})

PLAN_POLL_INTERVAL_SECONDS = 10
PLAN_MAX_WAIT_SECONDS = 600

_CLOUD_BLOCK_RE = re.compile(r"^\s*cloud\s*\{")
_REMOTE_BACKEND_RE = re.compile(r'^\s*backend\s+"remote"')
_ORGANIZATION_RE = re.compile(r'organization\s*=\s*"([^"]+)"')

RunCheckOutcome = Literal[
    "skipped",
    "no_runs",
    "apply_available",
    "approval_not_permitted",
    "auto_apply",
    "completed",
    "other",
]
ApprovalOutcome = Literal["approved", "already_applied", "already_applying"]


class WorkspaceRunError(RuntimeError):
    exit_code = 1


class WorkspaceSelectionError(WorkspaceRunError):
    pass


class ApprovalError(WorkspaceRunError):
    pass


class PlanFailedError(WorkspaceRunError):
    exit_code = 2

    def __init__(self, message: str, *, run_id: str, run_url: str, diagnostic: str) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.run_url = run_url
        self.diagnostic = diagnostic


@dataclass(frozen=True)
class RunCheckResult:
    outcome: RunCheckOutcome
    organization: str | None = None
    workspace: Workspace | None = None
    run: AutomationRun | None = None
    run_url: str | None = None


@dataclass(frozen=True)
class ApprovalResult:
    outcome: ApprovalOutcome
    run_id: str
    run_url: str | None = None


class WorkspaceSelector(Protocol):
    def select(self, workspaces: Sequence[Workspace]) -> Workspace | None: ...


@dataclass(frozen=True)
class NamePatternSelector:
    """Pick the non-production workspace by name.

    Each preferred marker is tried in order across all workspaces before the
    next one; failing all of them, the first workspace whose name carries no
    production marker wins.
    """

    preferred_markers: tuple[str, ...] = ("-dev", "-staging", "-nonprod")
    production_markers: tuple[str, ...] = ("-prod", "-production")

    def select(self, workspaces: Sequence[Workspace]) -> Workspace | None:
        for marker in self.preferred_markers:
            for workspace in workspaces:
                if marker in workspace.name:
                    return workspace
        for workspace in workspaces:
            if not any(marker in workspace.name for marker in self.production_markers):
                return workspace
        return None


def find_organization(config_dir: Path) -> str | None:
    if not config_dir.is_dir():
        return None
    for tf_file in sorted(config_dir.rglob("*.tf")):
        try:
            lines = tf_file.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError):
            continue
        for header_re, window in ((_CLOUD_BLOCK_RE, 5), (_REMOTE_BACKEND_RE, 10)):
            organization = _organization_after_header(lines, header_re, window)
            if organization is not None:
                return organization
    return None


def _organization_after_header(
    lines: list[str], header_re: re.Pattern[str], window: int
) -> str | None:
    for index, line in enumerate(lines):
        if not header_re.search(line):
            continue
        for candidate in lines[index : index + window + 1]:
            match = _ORGANIZATION_RE.search(candidate)
            if match is not None:
                return match.group(1)
    return None


def run_url(app_url: str, organization: str, workspace_name: str, run_id: str) -> str:
    return f"{app_url.rstrip('/')}/app/{organization}/workspaces/{workspace_name}/runs/{run_id}"


def classify_run(run: AutomationRun) -> Classification[AutomationRun]:
    if run.status in ERROR_STATUSES:
        return Blocked(reason=f"run {run.status}")
    if run.status in PLANNING_STATUSES:
        return Continue(pending=(run.status,))
    return Done(run)


class WorkspaceRunOrchestrator:
    def __init__(
        self,
        client: TerraformCloudClient | None,
        *,
        config_dir: Path,
        console: Console,
        signals: SignalChannel,
        selector: WorkspaceSelector | None = None,
        app_url: str = "https://app.terraform.io",
        log_tail_lines: int = 50,
        approval_comment: str = "Approved via landfall",
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._config_dir = config_dir
        self._console = console
        self._signals = signals
        self._selector: WorkspaceSelector = selector or NamePatternSelector()
        self._app_url = app_url
        self._log_tail_lines = log_tail_lines
        self._approval_comment = approval_comment
        self._stop_event = stop_event
        self._clock = clock
        self._sleep = sleep

    def check_latest_run(self, repo_identity: str) -> RunCheckResult:
        client = self._client
        if client is None or not self._config_dir.is_dir():
            log_event(
                LOGGER,
                "run_check_finished",
                outcome="skipped",
                has_token=client is not None,
                config_dir=str(self._config_dir),
            )
            return RunCheckResult(outcome="skipped")

        organization = find_organization(self._config_dir)
        if organization is None:
            self._console.warn("No Terraform Cloud organization found in terraform config")
            log_event(LOGGER, "run_check_finished", outcome="skipped", reason="no_organization")
            return RunCheckResult(outcome="skipped")
        self._console.status("Checking Terraform Cloud status...")
        self._console.info(f"Found TFC organization: {organization}")

        linked = [
            workspace
            for workspace in client.list_workspaces(organization)
            if workspace.repo_identifier == repo_identity
        ]
        if not linked:
            raise WorkspaceSelectionError(
                f"No Terraform Cloud workspaces in {organization} are linked to {repo_identity}"
            )
        workspace = self._selector.select(linked)
        if workspace is None:
            names = ", ".join(item.name for item in linked)
            raise WorkspaceSelectionError(
                f"Could not identify a non-production workspace ({names})"
            )
        log_event(
            LOGGER,
            "workspace_selected",
            organization=organization,
            workspace=workspace.name,
            candidates=len(linked),
        )
        self._console.info(f"Non-production workspace: {workspace.name}")

        run = client.latest_run(workspace.workspace_id)
        if run is None:
            self._console.info(f"No runs found for workspace {workspace.name}")
            return self._finish(
                RunCheckResult(outcome="no_runs", organization=organization, workspace=workspace)
            )

        url = run_url(self._app_url, organization, workspace.name, run.run_id)
        self._console.info(f"Latest run: {run.run_id} (status: {run.status})")

        if run.status in PLANNING_STATUSES:
            run = self._wait_for_plan(client, run, url)
        if run.status in ERROR_STATUSES:
            raise self._plan_failed(client, run, url, f"Terraform plan {run.status}")

        result = RunCheckResult(
            outcome="other", organization=organization, workspace=workspace, run=run, run_url=url
        )
        if run.status in AWAITING_APPROVAL_STATUSES:
            self._console.info("Terraform plan completed successfully")
            if not run.is_confirmable:
                self._console.info("Auto-apply is enabled; the run will apply automatically")
                return self._finish(replace(result, outcome="auto_apply"))
            if not run.can_apply:
                self._console.info("Plan requires approval but you do not have permission to apply")
                self._console.line(f"Run: {url}")
                return self._finish(replace(result, outcome="approval_not_permitted"))
            self._signals.emit(
                apply_available_signal(
                    run_id=run.run_id,
                    workspace=workspace.name,
                    organization=organization,
                    run_url=url,
                )
            )
            self._console.info("Plan requires approval before apply. You can approve this run.")
            return self._finish(replace(result, outcome="apply_available"))
        if run.status in FINISHED_STATUSES:
            self._console.info("Run has already completed")
            return self._finish(replace(result, outcome="completed"))
        self._console.info(f"Run status: {run.status}")
        return self._finish(result)

    def approve(self, run_id: str) -> ApprovalResult:
        client = self._client
        if client is None:
            raise ApprovalError("Terraform Cloud token is not configured")
        try:
            run = client.get_run(run_id)
        except (TerraformCloudError, TerraformCloudPollingError) as exc:
            raise ApprovalError(f"Could not fetch run {run_id}: {exc}") from exc

        if not run.is_confirmable:
            if run.status in FINISHED_STATUSES:
                self._console.info("Run has already been applied or completed")
                return self._approved(ApprovalResult(outcome="already_applied", run_id=run_id))
            if run.status in APPLYING_STATUSES:
                self._console.info("Run is already applying")
                return self._approved(ApprovalResult(outcome="already_applying", run_id=run_id))
            if run.status in ERROR_STATUSES:
                raise ApprovalError(f"Run is in state '{run.status}' and cannot be approved")
            raise ApprovalError(f"Run is not in a confirmable state (status: {run.status})")

        self._console.status(f"Approving Terraform run {run_id}...")
        try:
            client.apply_run(run_id, self._approval_comment)
        except TerraformCloudError as exc:
            raise ApprovalError(f"Failed to approve run: {exc}") from exc

        self._console.info("Run approved; Terraform apply is now in progress")
        url = self._monitoring_url(client, run)
        if url is not None:
            self._console.line(f"Monitor the apply at: {url}")
        return self._approved(ApprovalResult(outcome="approved", run_id=run_id, run_url=url))

    def _wait_for_plan(
        self, client: TerraformCloudClient, run: AutomationRun, url: str
    ) -> AutomationRun:
        self._console.status("Plan is in progress, waiting for completion...")

        def fetch() -> Classification[AutomationRun]:
            return classify_run(client.get_run(run.run_id))

        result = poll_until(
            fetch,
            interval_seconds=PLAN_POLL_INTERVAL_SECONDS,
            max_wait_seconds=PLAN_MAX_WAIT_SECONDS,
            on_progress=self._report_progress,
            stop_event=self._stop_event,
            clock=self._clock,
            sleep=self._sleep,
            label=f"plan_{run.run_id}",
        )
        if result.status == "done" and result.result is not None:
            return result.result
        if result.status == "timed_out":
            raise self._plan_failed(client, run, url, "Timed out waiting for the plan to complete")
        if result.status == "cancelled":
            raise WorkspaceRunError(f"Stopped waiting for run {run.run_id}")
        raise self._plan_failed(client, run, url, f"Terraform plan failed ({result.reason})")

    def _report_progress(self, progress: PollProgress) -> None:
        self._console.status(
            f"Terraform plan in progress... ({format_elapsed(progress.elapsed_seconds)} elapsed)"
        )

    def _plan_failed(
        self, client: TerraformCloudClient, run: AutomationRun, url: str, message: str
    ) -> PlanFailedError:
        diagnostic = self._diagnose(client, run)
        self._console.error(message)
        self._console.line()
        self._console.line("Error details:")
        self._console.line(diagnostic)
        self._console.line()
        self._console.line(f"Run: {url}")
        log_event(LOGGER, "run_check_finished", outcome="plan_failed", run_id=run.run_id)
        return PlanFailedError(message, run_id=run.run_id, run_url=url, diagnostic=diagnostic)

    def _diagnose(self, client: TerraformCloudClient, run: AutomationRun) -> str:
        plan_id = run.plan_id
        if plan_id is None:
            try:
                plan_id = client.get_run(run.run_id).plan_id
            except (TerraformCloudError, TerraformCloudPollingError):
                plan_id = None
        if plan_id is None:
            return "unknown error"
        message = client.plan_error_message(plan_id)
        if message:
            return message
        tail = client.plan_log_tail(plan_id, self._log_tail_lines)
        if tail:
            return tail
        return "unknown error"

    def _monitoring_url(self, client: TerraformCloudClient, run: AutomationRun) -> str | None:
        if run.workspace_id is None:
            return None
        try:
            workspace = client.get_workspace(run.workspace_id)
        except (TerraformCloudError, TerraformCloudPollingError) as exc:
            log_event(LOGGER, "workspace_lookup_failed", run_id=run.run_id, error=str(exc))
            return None
        if workspace.organization is None:
            return None
        return run_url(self._app_url, workspace.organization, workspace.name, run.run_id)

    def _finish(self, result: RunCheckResult) -> RunCheckResult:
        log_event(
            LOGGER,
            "run_check_finished",
            outcome=result.outcome,
            run_id=result.run.run_id if result.run is not None else None,
            status=result.run.status if result.run is not None else None,
        )
        return result

    def _approved(self, result: ApprovalResult) -> ApprovalResult:
        log_event(LOGGER, "run_approved", outcome=result.outcome, run_id=result.run_id)
        return result

