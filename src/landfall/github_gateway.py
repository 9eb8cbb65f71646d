from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
import re
from typing import cast

from landfall.models import (
    ChangeRequest,
    ChangeRequestState,
    CheckRun,
    Mergeable,
    PullRequest,
    ReviewDecision,
)
from landfall.observability import log_event
from landfall.poll_loop import TransientFetchError
from landfall.shell import CommandError, run


LOGGER = logging.getLogger("landfall.github_gateway")
_VIEW_FIELDS = (
    "number,url,state,mergedAt,mergeable,reviewDecision,statusCheckRollup,"
    "viewerCanMergeAsAdmin,headRefName,baseRefName"
)
_PENDING_CONTEXT_STATES = {"PENDING", "EXPECTED"}
_PULL_URL_RE = re.compile(r"/pull/(\d+)\s*$")


class GitHubPollingError(TransientFetchError):
    """Recoverable GitHub polling failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    cwd: Path | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def find_change_request(self, branch: str) -> int | None:
        payload = self._gh_json(
            [
                "pr",
                "list",
                "--head",
                branch,
                "--state",
                "all",
                "--limit",
                "100",
                "--json",
                "number",
            ]
        )
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")

        numbers: list[int] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None or "number" not in item_obj:
                continue
            numbers.append(_as_int(item_obj.get("number"), field="number"))

        selected = max(numbers) if numbers else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=branch,
            found=selected is not None,
            pr_number=selected,
        )
        return selected

    def find_open_change_request(self, branch: str) -> PullRequest | None:
        payload = self._gh_json(
            ["pr", "list", "--head", branch, "--state", "open", "--json", "number,url"]
        )
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")
        candidates: list[PullRequest] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            candidates.append(
                PullRequest(
                    number=_as_int(item_obj.get("number"), field="number"),
                    html_url=_as_string(item_obj.get("url")),
                )
            )
        if not candidates:
            return None
        return max(candidates, key=lambda pr: pr.number)

    def get_change_request(self, number: int) -> ChangeRequest:
        payload = self._gh_json(["pr", "view", str(number), "--json", _VIEW_FIELDS])
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for pull request")

        rollup = payload_obj.get("statusCheckRollup")
        checks: list[CheckRun] = []
        if isinstance(rollup, list):
            for entry in rollup:
                entry_obj = _as_object_dict(entry)
                if entry_obj is None:
                    continue
                checks.append(_parse_check(entry_obj))

        change_request = ChangeRequest(
            number=_as_int(payload_obj.get("number"), field="number"),
            url=_as_string(payload_obj.get("url")),
            state=_parse_state(payload_obj.get("state")),
            merged_at=_as_optional_str(payload_obj.get("mergedAt")) or None,
            mergeable=_parse_mergeable(payload_obj.get("mergeable")),
            review_decision=_parse_review_decision(payload_obj.get("reviewDecision")),
            check_runs=tuple(checks),
            viewer_can_admin_merge=payload_obj.get("viewerCanMergeAsAdmin") is True,
            head_branch=_as_string(payload_obj.get("headRefName")),
            base_branch=_as_string(payload_obj.get("baseRefName")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=change_request.number,
            state=change_request.state,
            check_count=len(change_request.check_runs),
        )
        return change_request

    def merge_change_request(self, number: int, *, admin: bool = False) -> None:
        argv = ["pr", "merge", str(number), "--squash"]
        if admin:
            argv.append("--admin")
        try:
            self._gh(argv)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "change_request_merge_failed",
                repo_full_name=self.full_name,
                pr_number=number,
                admin=admin,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "change_request_merged",
            repo_full_name=self.full_name,
            pr_number=number,
            admin=admin,
        )

    def create_change_request(self, *, title: str, body: str, head: str, base: str) -> PullRequest:
        try:
            output = self._gh(
                [
                    "pr",
                    "create",
                    "--title",
                    title,
                    "--body",
                    body,
                    "--head",
                    head,
                    "--base",
                    base,
                ]
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        url = output.strip().splitlines()[-1].strip() if output.strip() else ""
        match = _PULL_URL_RE.search(url)
        if match is None:
            raise RuntimeError(f"Unexpected gh pr create output: {_preview_for_log(output)}")
        pr = PullRequest(number=int(match.group(1)), html_url=url)
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
            base=base,
            head=head,
        )
        return pr

    def _gh(self, argv: list[str]) -> str:
        return run(["gh", *argv, "--repo", self.full_name], cwd=self.cwd)

    def _gh_json(self, argv: list[str]) -> object:
        raw = ""
        try:
            raw = self._gh(argv)
            if not raw.strip():
                raise RuntimeError("empty response")
            return json.loads(raw)
        except (CommandError, RuntimeError, ValueError) as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                command=" ".join(argv[:2]),
                error_type=type(exc).__name__,
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"gh {' '.join(argv[:2])} failed: {exc}") from exc


def _parse_check(entry: dict[str, object]) -> CheckRun:
    if "context" in entry and "name" not in entry:
        # Legacy commit status: a single state stands in for status and conclusion.
        state = _as_string(entry.get("state")).strip().upper()
        if state in _PENDING_CONTEXT_STATES or not state:
            return CheckRun(
                name=_as_string(entry.get("context")), status="PENDING", conclusion=None
            )
        return CheckRun(name=_as_string(entry.get("context")), status="COMPLETED", conclusion=state)

    conclusion = _as_optional_str(entry.get("conclusion"))
    normalized_conclusion = conclusion.strip().upper() if conclusion else None
    return CheckRun(
        name=_as_string(entry.get("name")) or "unnamed-check",
        status=_as_string(entry.get("status")).strip().upper() or "COMPLETED",
        conclusion=normalized_conclusion or None,
    )


def _parse_state(value: object) -> ChangeRequestState:
    normalized = _as_string(value).strip().upper()
    if normalized not in {"OPEN", "MERGED", "CLOSED"}:
        raise GitHubPollingError(f"Unexpected pull request state: {value!r}")
    return cast(ChangeRequestState, normalized)


def _parse_mergeable(value: object) -> Mergeable:
    normalized = _as_string(value).strip().upper()
    if normalized in {"MERGEABLE", "CONFLICTING"}:
        return cast(Mergeable, normalized)
    return "UNKNOWN"


def _parse_review_decision(value: object) -> ReviewDecision:
    normalized = _as_string(value).strip().upper()
    if normalized in {"APPROVED", "REVIEW_REQUIRED", "CHANGES_REQUESTED"}:
        return cast(ReviewDecision, normalized)
    return "NONE"


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
