from __future__ import annotations

from pathlib import Path

import pytest

from landfall.git_ops import LocalRepository
from landfall.shell import CommandError


class FakeGit:
    """Records git argv (minus the ``git -C path`` prefix) and replays scripted results."""

    def __init__(self, outputs: dict[tuple[str, ...], str | CommandError] | None = None) -> None:
        self.outputs = outputs or {}
        self.calls: list[tuple[str, ...]] = []

    def run(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> str:
        _ = cwd, input_text
        assert argv[:2] == ["git", "-C"]
        key = tuple(argv[3:])
        self.calls.append(key)
        result = self.outputs.get(key, "")
        if isinstance(result, CommandError):
            if check:
                raise result
            return result.stdout
        return result

    def succeeds(self, argv: list[str], *, cwd: Path | None = None) -> bool:
        try:
            self.run(argv, cwd=cwd)
        except CommandError:
            return False
        return True


@pytest.fixture
def fake_git(monkeypatch: pytest.MonkeyPatch) -> FakeGit:
    fake = FakeGit()
    monkeypatch.setattr("landfall.git_ops.run", fake.run)
    monkeypatch.setattr("landfall.git_ops.succeeds", fake.succeeds)
    return fake


def _fail(stderr: str = "fatal") -> CommandError:
    return CommandError("Command failed", stderr=stderr)


def test_default_branch_from_symbolic_ref(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("symbolic-ref", "--short", "refs/remotes/origin/HEAD")] = "origin/trunk\n"

    assert LocalRepository(tmp_path).default_branch() == "trunk"
    assert ("remote", "show", "origin") not in fake_git.calls


def test_default_branch_falls_back_to_remote_show(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("symbolic-ref", "--short", "refs/remotes/origin/HEAD")] = _fail()
    fake_git.outputs[("remote", "show", "origin")] = (
        "* remote origin\n  Fetch URL: git@github.com:o/r.git\n  HEAD branch: develop\n"
    )

    assert LocalRepository(tmp_path).default_branch() == "develop"


def test_default_branch_uses_fallback_when_unknown(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("symbolic-ref", "--short", "refs/remotes/origin/HEAD")] = _fail()
    fake_git.outputs[("remote", "show", "origin")] = "  HEAD branch: (unknown)\n"

    assert LocalRepository(tmp_path).default_branch(fallback="master") == "master"


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("git@github.com:acme/widgets.git", "acme/widgets"),
        ("https://github.com/acme/widgets", "acme/widgets"),
        ("https://github.com/acme/widgets.git/", "acme/widgets"),
        ("https://gitlab.com/acme/widgets.git", None),
        ("", None),
    ],
)
def test_remote_full_name(
    tmp_path: Path, fake_git: FakeGit, url: str, expected: str | None
) -> None:
    fake_git.outputs[("remote", "get-url", "origin")] = f"{url}\n"

    assert LocalRepository(tmp_path).remote_full_name() == expected


def test_changed_paths_parses_porcelain(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("status", "--porcelain")] = (
        " M src/a.py\n?? new file.txt\nR  old.py -> renamed.py\n"
    )
    repo = LocalRepository(tmp_path)

    assert repo.changed_paths() == ("src/a.py", "new file.txt", "renamed.py")
    assert repo.has_uncommitted_changes() is True


def test_clean_tree_has_no_changes(tmp_path: Path, fake_git: FakeGit) -> None:
    assert LocalRepository(tmp_path).has_uncommitted_changes() is False


def test_stash_includes_untracked(tmp_path: Path, fake_git: FakeGit) -> None:
    LocalRepository(tmp_path).stash("Auto-stash")

    assert fake_git.calls == [("stash", "push", "--include-untracked", "-m", "Auto-stash")]


def test_pull_reports_failure(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("pull", "origin", "main")] = _fail("CONFLICT")

    assert LocalRepository(tmp_path).pull("main") is False


def test_take_remote_versions_stops_on_first_failure(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("add", "-A")] = _fail()

    assert LocalRepository(tmp_path).take_remote_versions() is False
    assert fake_git.calls == [("checkout", "--theirs", "--", "."), ("add", "-A")]


def test_take_remote_versions_commits_resolution(tmp_path: Path, fake_git: FakeGit) -> None:
    assert LocalRepository(tmp_path).take_remote_versions() is True
    assert fake_git.calls[-1] == ("commit", "--no-edit")


def test_branch_deletion_is_best_effort(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("branch", "-dr", "origin/feat/x")] = _fail("not found")
    repo = LocalRepository(tmp_path)

    assert repo.delete_local_branch("feat/x") is True
    assert repo.delete_remote_tracking_ref("feat/x") is False
    assert ("branch", "-D", "feat/x") in fake_git.calls


def test_commit_all_skips_when_nothing_staged(tmp_path: Path, fake_git: FakeGit) -> None:
    assert LocalRepository(tmp_path).commit_all("feat: x") is False
    assert fake_git.calls == [("add", "-A"), ("diff", "--cached", "--name-only")]


def test_commit_all_commits_staged_changes(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("diff", "--cached", "--name-only")] = "a.py\nb.py\n"

    assert LocalRepository(tmp_path).commit_all("feat: x") is True
    assert fake_git.calls[-1] == ("commit", "-m", "feat: x")


def test_push_branch_reraises(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("push", "-u", "origin", "feat/x")] = _fail("rejected")

    with pytest.raises(CommandError):
        LocalRepository(tmp_path).push_branch("feat/x")


def test_commits_since_lists_oneline_log(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("log", "--oneline", "-20", "main..HEAD")] = "abc one\n\ndef two\n"

    assert LocalRepository(tmp_path).commits_since("main") == ("abc one", "def two")


def test_current_branch_and_head(tmp_path: Path, fake_git: FakeGit) -> None:
    fake_git.outputs[("rev-parse", "--abbrev-ref", "HEAD")] = "feat/x\n"
    fake_git.outputs[("rev-parse", "HEAD")] = "abc123\n"
    repo = LocalRepository(tmp_path)

    assert repo.is_repository() is True
    assert repo.current_branch() == "feat/x"
    assert repo.head_sha() == "abc123"
