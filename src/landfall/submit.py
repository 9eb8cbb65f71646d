from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal

from landfall.config import MergeConfig
from landfall.git_ops import LocalRepository
from landfall.github_gateway import GitHubGateway
from landfall.models import PullRequest
from landfall.observability import Console, log_event


LOGGER = logging.getLogger("landfall.submit")

MAX_TITLE_LENGTH = 72

SubmitOutcome = Literal["disabled", "on_mainline", "not_feature_branch", "created", "existing"]


@dataclass(frozen=True)
class SubmitResult:
    outcome: SubmitOutcome
    committed: bool = False
    pull_request: PullRequest | None = None


def heuristic_title(branch: str) -> str:
    kind, _, rest = branch.partition("/")
    words = " ".join(rest.replace("/", " ").replace("-", " ").replace("_", " ").split())
    return _truncate(f"{kind}: {words}" if words else kind)


def default_body(branch: str, commits: tuple[str, ...]) -> str:
    lines = ["## Summary", "", f"Changes from branch `{branch}`."]
    if commits:
        lines.extend(["", "## Commits", ""])
        lines.extend(f"- {commit}" for commit in commits)
    return "\n".join(lines) + "\n"


class SubmitWorkflow:
    def __init__(
        self,
        *,
        repo: LocalRepository,
        github: GitHubGateway,
        console: Console,
        config: MergeConfig,
        default_branch: str,
        enabled: bool = True,
    ) -> None:
        self._repo = repo
        self._github = github
        self._console = console
        self._config = config
        self._default_branch = default_branch
        self._enabled = enabled

    def submit(
        self,
        branch: str,
        *,
        message: str | None = None,
        title: str | None = None,
        body: str | None = None,
    ) -> SubmitResult:
        if not self._enabled:
            return self._finish(branch, SubmitResult(outcome="disabled"))
        if branch == self._default_branch:
            self._console.warn(f"On {self._default_branch}; nothing to submit")
            return self._finish(branch, SubmitResult(outcome="on_mainline"))
        if not self._config.is_feature_branch(branch):
            self._console.warn(f"{branch} is not a feature branch; nothing to submit")
            return self._finish(branch, SubmitResult(outcome="not_feature_branch"))

        commit_message = message.strip() if message and message.strip() else heuristic_title(branch)
        committed = self._repo.commit_all(commit_message)
        if committed:
            self._console.info(f"Committed: {commit_message.splitlines()[0]}")

        self._repo.push_branch(branch)
        self._console.info(f"Pushed {branch}")

        existing = self._github.find_open_change_request(branch)
        if existing is not None:
            self._console.info(f"Pull request #{existing.number} already exists for {branch}")
            self._remind()
            return self._finish(
                branch,
                SubmitResult(outcome="existing", committed=committed, pull_request=existing),
            )

        pr_title = _truncate(title.strip()) if title and title.strip() else heuristic_title(branch)
        pr_body = body or default_body(branch, self._repo.commits_since(self._default_branch))
        created = self._github.create_change_request(
            title=pr_title, body=pr_body, head=branch, base=self._default_branch
        )
        self._console.info(f"Pull request created: {created.html_url}")
        self._remind()
        return self._finish(
            branch, SubmitResult(outcome="created", committed=committed, pull_request=created)
        )

    def _remind(self) -> None:
        self._console.line()
        self._console.line(
            "When the pull request is approved, run `landfall complete` to merge and clean up."
        )

    def _finish(self, branch: str, result: SubmitResult) -> SubmitResult:
        log_event(
            LOGGER,
            "submit_finished",
            branch=branch,
            outcome=result.outcome,
            committed=result.committed,
            pr_number=result.pull_request.number if result.pull_request is not None else None,
        )
        return result


def _truncate(title: str) -> str:
    if len(title) <= MAX_TITLE_LENGTH:
        return title
    return f"{title[: MAX_TITLE_LENGTH - 3]}..."
