from __future__ import annotations

import argparse
from contextlib import contextmanager
import os
from pathlib import Path
import signal
import threading
from types import FrameType
from typing import Iterator

from landfall.cleanup import CleanupStage
from landfall.config import AppConfig, ConfigError, load_config, with_poll_overrides
from landfall.git_ops import LocalRepository
from landfall.github_gateway import GitHubGateway
from landfall.merge_orchestrator import (
    EXIT_ERROR,
    EXIT_OK,
    EXIT_SIGNAL,
    CompletionError,
    MergeOrchestrator,
)
from landfall.observability import Console, configure_logging
from landfall.session import load_session_context
from landfall.shell import CommandError, summarize_error
from landfall.signals import SignalChannel
from landfall.submit import SubmitWorkflow
from landfall.tfc_client import TerraformCloudClient
from landfall.workspace_run import WorkspaceRunError, WorkspaceRunOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="landfall")
    subparsers = parser.add_subparsers(dest="command", required=True)

    complete_parser = subparsers.add_parser(
        "complete", help="Wait for checks, merge the branch's pull request, and clean up"
    )
    _add_common_arguments(complete_parser)
    complete_parser.add_argument(
        "--branch", type=str, help="Branch to complete (defaults to the current branch)"
    )
    complete_parser.add_argument(
        "--skip-merge",
        action="store_true",
        help="The pull request was merged externally; only clean up",
    )
    complete_parser.add_argument(
        "--admin-merge",
        action="store_true",
        help="Merge with admin override when an approving review is still required",
    )
    complete_parser.add_argument(
        "--check-interval", type=int, help="Seconds between check polls (default 60)"
    )
    complete_parser.add_argument(
        "--max-wait", type=int, help="Maximum seconds to wait for checks (default 3600)"
    )

    infra_check_parser = subparsers.add_parser(
        "infra-check", help="Report the latest Terraform Cloud run of the non-production workspace"
    )
    _add_common_arguments(infra_check_parser)

    infra_approve_parser = subparsers.add_parser(
        "infra-approve", help="Approve (apply) a confirmable Terraform Cloud run"
    )
    _add_common_arguments(infra_approve_parser)
    infra_approve_parser.add_argument("run_id", type=str, help="Run id, e.g. run-abc123")

    submit_parser = subparsers.add_parser(
        "submit", help="Commit, push, and open a pull request for the current branch"
    )
    _add_common_arguments(submit_parser)
    submit_parser.add_argument("--message", type=str, help="Commit message")
    submit_parser.add_argument("--title", type=str, help="Pull request title")
    submit_parser.add_argument("--body", type=str, help="Pull request body")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("landfall.toml"))
    parser.add_argument(
        "-C",
        "--repo-path",
        type=Path,
        default=Path("."),
        help="Path to the git working tree (default: current directory)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Log milestones to stderr; repeat for full runtime logging",
    )


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(_verbose_mode(int(getattr(args, "verbose", 0) or 0)))
    console = Console()
    raise SystemExit(_run(args, console))


def _run(args: argparse.Namespace, console: Console) -> int:
    try:
        config = load_config(_config_path(args.config, args.repo_path))
        if args.command == "complete":
            return _cmd_complete(config, args, console)
        if args.command == "infra-check":
            return _cmd_infra_check(config, args, console)
        if args.command == "infra-approve":
            return _cmd_infra_approve(config, args, console)
        if args.command == "submit":
            return _cmd_submit(config, args, console)
    except (CompletionError, WorkspaceRunError) as exc:
        console.error(str(exc))
        return exc.exit_code
    except CommandError as exc:
        console.error(summarize_error(exc))
        return EXIT_ERROR
    except (ConfigError, RuntimeError) as exc:
        console.error(str(exc))
        return EXIT_ERROR
    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_complete(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    repo = _open_repository(args.repo_path)
    config = with_poll_overrides(
        config, interval_seconds=args.check_interval, max_wait_seconds=args.max_wait
    )
    default_branch = config.merge.default_branch or repo.default_branch()

    branch = args.branch
    if branch is None:
        branch = repo.current_branch()
        if branch == default_branch:
            console.warn(f"Already on {default_branch}. Nothing to do.")
            return EXIT_OK
        if not config.merge.is_feature_branch(branch):
            prefixes = ", ".join(f"{prefix}/" for prefix in config.merge.feature_branch_prefixes)
            console.error(f"Not on a feature branch (expected {prefixes}); current: {branch}")
            return EXIT_ERROR

    console.line()
    console.line("=== Completing Branch Workflow ===")
    console.info(f"Branch: {branch}")
    console.info(f"Default branch: {default_branch}")

    session = load_session_context(repo.path, config.session)
    signals = SignalChannel(console.stream)
    stop_event = threading.Event()
    orchestrator = MergeOrchestrator(
        github=_github_for(repo),
        cleanup=CleanupStage(
            repo, console=console, strategy=config.cleanup.pull_conflict_strategy
        ),
        session=session,
        signals=signals,
        console=console,
        config=config.merge,
        default_branch=default_branch,
        stop_event=stop_event,
    )
    with _stop_on_sigterm(stop_event):
        result = orchestrator.complete(
            branch, skip_merge=bool(args.skip_merge), admin_override=bool(args.admin_merge)
        )

    if result.outcome == "awaiting_decision":
        console.line(
            "Ask whether to merge with admin override. If yes, re-run: "
            f"landfall complete --branch {branch} --admin-merge"
        )
        return result.exit_code

    if session.tracked_issue_id:
        console.line(f"Update the status of tracked issue {session.tracked_issue_id} if needed.")
    console.line()
    console.line("=== Workflow Complete ===")
    return result.exit_code


def _cmd_infra_check(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    root = args.repo_path.resolve()
    token = os.environ.get(config.infra.token_env, "").strip()
    config_dir = root / config.infra.config_dir
    if not token or not config_dir.is_dir():
        # No credentials or no infrastructure in this repository: nothing to check.
        return EXIT_OK

    repo = _open_repository(root)
    identity = repo.remote_full_name()
    if identity is None:
        console.error("Could not determine the GitHub repository from the origin remote")
        return EXIT_ERROR

    stop_event = threading.Event()
    with TerraformCloudClient(token, api_url=config.infra.api_url) as client:
        orchestrator = _workspace_orchestrator(config, client, config_dir, console, stop_event)
        with _stop_on_sigterm(stop_event):
            result = orchestrator.check_latest_run(identity)
    if result.outcome == "apply_available" and result.run is not None:
        console.line(
            f"Ask whether to apply. If yes, run: landfall infra-approve {result.run.run_id}"
        )
        return EXIT_SIGNAL
    return EXIT_OK


def _cmd_infra_approve(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    root = args.repo_path.resolve()
    token = os.environ.get(config.infra.token_env, "").strip()
    config_dir = root / config.infra.config_dir
    if not token:
        console.error(f"{config.infra.token_env} environment variable is not set")
        return EXIT_ERROR
    with TerraformCloudClient(token, api_url=config.infra.api_url) as client:
        orchestrator = _workspace_orchestrator(
            config, client, config_dir, console, threading.Event()
        )
        orchestrator.approve(str(args.run_id))
    return EXIT_OK


def _cmd_submit(config: AppConfig, args: argparse.Namespace, console: Console) -> int:
    if not config.enabled:
        return EXIT_OK
    repo = _open_repository(args.repo_path)
    default_branch = config.merge.default_branch or repo.default_branch()
    workflow = SubmitWorkflow(
        repo=repo,
        github=_github_for(repo),
        console=console,
        config=config.merge,
        default_branch=default_branch,
        enabled=config.enabled,
    )
    workflow.submit(
        repo.current_branch(), message=args.message, title=args.title, body=args.body
    )
    return EXIT_OK


def _workspace_orchestrator(
    config: AppConfig,
    client: TerraformCloudClient,
    config_dir: Path,
    console: Console,
    stop_event: threading.Event,
) -> WorkspaceRunOrchestrator:
    return WorkspaceRunOrchestrator(
        client,
        config_dir=config_dir,
        console=console,
        signals=SignalChannel(console.stream),
        app_url=config.infra.app_url,
        log_tail_lines=config.infra.log_tail_lines,
        approval_comment=config.infra.approval_comment,
        stop_event=stop_event,
    )


def _config_path(config: Path, repo_path: Path) -> Path:
    if config.is_absolute() or config.exists():
        return config
    return repo_path / config


def _open_repository(path: Path) -> LocalRepository:
    repo = LocalRepository(path.resolve())
    if not repo.is_repository():
        raise RuntimeError(f"Not a git repository: {repo.path}")
    return repo


def _github_for(repo: LocalRepository) -> GitHubGateway:
    full_name = repo.remote_full_name()
    if full_name is None:
        raise RuntimeError("Could not determine the GitHub repository from the origin remote")
    owner, name = full_name.split("/", 1)
    return GitHubGateway(owner, name, cwd=repo.path)


def _verbose_mode(count: int) -> str | None:
    if count <= 0:
        return None
    if count == 1:
        return "low"
    return "high"


@contextmanager
def _stop_on_sigterm(stop_event: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: FrameType | None) -> None:
        stop_event.set()

    previous = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)
