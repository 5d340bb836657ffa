"""
Tests for core/hooks.py - install idempotence, foreign hooks, hook behavior.
"""
import logging
import os
import subprocess
from unittest.mock import patch

import pytest

from conftest import git, needs_git
from core.hooks import (
    HOOK_MARKER,
    HOOK_NAMES,
    _create_exclusive,
    git_dir_for,
    guard_repository,
    hooks_dir_for,
    install_hooks,
    render_hook,
    scan_hooks,
)

ZERO = "0" * 40
MiB = 1024 * 1024


class TestRenderHook:
    @pytest.mark.parametrize("name", HOOK_NAMES)
    def test_marker_and_shebang(self, name):
        script = render_hook(name)
        assert script.startswith("#!/usr/bin/env bash\n")
        assert HOOK_MARKER in script

    def test_protected_branches_are_quoted(self):
        script = render_hook("pre-push", protected_branches=["main", "release 1"])
        assert "protected=(main 'release 1')" in script

    def test_size_limit_embedded(self):
        assert "limit=1234" in render_hook("pre-commit", max_file_bytes=1234)

    def test_unknown_hook(self):
        with pytest.raises(ValueError):
            render_hook("post-merge")


class TestInstall:
    def test_installs_all_hooks_executable(self, temp_repo):
        hooks = temp_repo / ".git" / "hooks"
        report = install_hooks(hooks)
        assert report.installed == list(HOOK_NAMES)
        for name in HOOK_NAMES:
            path = hooks / name
            assert os.access(path, os.X_OK)
            assert HOOK_MARKER in path.read_text()

    def test_second_run_changes_nothing(self, temp_repo):
        hooks = temp_repo / ".git" / "hooks"
        install_hooks(hooks)
        before = {name: ((hooks / name).read_bytes(), (hooks / name).stat().st_mtime_ns) for name in HOOK_NAMES}

        report = install_hooks(hooks)

        assert report.installed == []
        assert report.unchanged == list(HOOK_NAMES)
        assert report.warnings == []
        after = {name: ((hooks / name).read_bytes(), (hooks / name).stat().st_mtime_ns) for name in HOOK_NAMES}
        assert before == after
        assert sorted(p.name for p in hooks.iterdir()) == sorted(HOOK_NAMES)

    def test_foreign_hook_preserved_with_one_warning(self, temp_repo, caplog):
        hooks = temp_repo / ".git" / "hooks"
        custom = "#!/bin/sh\necho my own hook\n"
        (hooks / "pre-push").write_text(custom)

        with caplog.at_level(logging.WARNING, logger="core.hooks"):
            report = install_hooks(hooks)

        assert (hooks / "pre-push").read_text() == custom
        assert report.foreign == ["pre-push"]
        assert report.installed == ["pre-commit", "pre-rebase"]
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "pre-push" in warnings[0].getMessage()

    def test_creates_missing_hooks_directory(self, tmp_path):
        hooks = tmp_path / ".git" / "hooks"
        install_hooks(hooks)
        assert {r.name for r in scan_hooks(hooks) if r.installed} == set(HOOK_NAMES)

    def test_exclusive_create_loses_to_existing_file(self, tmp_path):
        target = tmp_path / "pre-commit"
        target.write_text("first writer\n")
        assert _create_exclusive(target, "second writer\n") is False
        assert target.read_text() == "first writer\n"
        assert [p.name for p in tmp_path.iterdir()] == ["pre-commit"]


class TestRepositoryDetection:
    def test_no_repository(self, tmp_path):
        assert hooks_dir_for(tmp_path) is None
        assert guard_repository(tmp_path) is None

    def test_subdirectory_uses_repo_root(self, temp_repo):
        sub = temp_repo / "src" / "pkg"
        sub.mkdir(parents=True)
        assert hooks_dir_for(sub) == temp_repo / ".git" / "hooks"

    def test_worktree_git_file(self, tmp_path):
        main_git = tmp_path / "main" / ".git"
        wt_git = main_git / "worktrees" / "wt"
        wt_git.mkdir(parents=True)
        (wt_git / "commondir").write_text("../..\n")
        worktree = tmp_path / "wt"
        worktree.mkdir()
        (worktree / ".git").write_text(f"gitdir: {wt_git}\n")

        assert git_dir_for(worktree) == main_git
        assert hooks_dir_for(worktree) == main_git / "hooks"

    def test_guard_reports_io_errors(self, temp_repo):
        with patch("core.hooks.install_hooks", side_effect=PermissionError("denied")):
            report = guard_repository(temp_repo)
        assert report is not None
        assert len(report.warnings) == 1
        assert "denied" in str(report.warnings[0])


def _run_hook(repo, name, *args, stdin=""):
    return subprocess.run(
        ["bash", str(repo / ".git" / "hooks" / name), *args],
        cwd=repo,
        input=stdin,
        capture_output=True,
        text=True,
    )


def _commit(repo, filename, content="x\n"):
    (repo / filename).write_text(content)
    git(repo, "add", filename)
    git(repo, "commit", "-q", "-m", f"add {filename}")
    return git(repo, "rev-parse", "HEAD").stdout.strip()


@needs_git
class TestInstalledHooks:
    """Run the generated scripts against a real repository."""

    def test_large_staged_file_rejected(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        big = git_repo / "big.bin"
        with open(big, "wb") as f:
            f.truncate(60 * MiB)
        git(git_repo, "add", "big.bin")

        result = git(git_repo, "commit", "-q", "-m", "big", check=False)

        assert result.returncode != 0
        assert "cannot be committed" in result.stderr
        assert git(git_repo, "rev-parse", "--verify", "-q", "HEAD", check=False).returncode != 0

    def test_file_under_limit_accepted(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        small = git_repo / "small.bin"
        with open(small, "wb") as f:
            f.truncate(10 * MiB)
        git(git_repo, "add", "small.bin")

        result = git(git_repo, "commit", "-q", "-m", "small", check=False)

        assert result.returncode == 0, result.stderr

    def test_push_deleting_protected_branch_rejected(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        sha = _commit(git_repo, "a.txt")
        result = _run_hook(git_repo, "pre-push", "origin", "/dev/null",
                           stdin=f"(delete) {ZERO} refs/heads/main {sha}\n")
        assert result.returncode == 1
        assert "deleting protected branch 'main'" in result.stderr

    def test_non_fast_forward_push_rejected(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        remote_sha = _commit(git_repo, "a.txt")
        git(git_repo, "checkout", "-q", "--orphan", "rewrite")
        local_sha = _commit(git_repo, "b.txt")

        result = _run_hook(git_repo, "pre-push", "origin", "/dev/null",
                           stdin=f"refs/heads/rewrite {local_sha} refs/heads/master {remote_sha}\n")

        assert result.returncode == 1
        assert "non-fast-forward" in result.stderr

    def test_fast_forward_push_allowed(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        remote_sha = _commit(git_repo, "a.txt")
        local_sha = _commit(git_repo, "b.txt")

        result = _run_hook(git_repo, "pre-push", "origin", "/dev/null",
                           stdin=f"refs/heads/main {local_sha} refs/heads/main {remote_sha}\n")

        assert result.returncode == 0, result.stderr

    def test_force_push_to_unprotected_branch_allowed(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        remote_sha = _commit(git_repo, "a.txt")
        git(git_repo, "checkout", "-q", "--orphan", "rewrite")
        local_sha = _commit(git_repo, "b.txt")

        result = _run_hook(git_repo, "pre-push", "origin", "/dev/null",
                           stdin=f"refs/heads/rewrite {local_sha} refs/heads/feature {remote_sha}\n")

        assert result.returncode == 0, result.stderr

    def test_rebase_onto_protected_branch_rejected(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        _commit(git_repo, "a.txt")
        git(git_repo, "checkout", "-q", "-b", "feature")

        result = _run_hook(git_repo, "pre-rebase", "main")

        assert result.returncode == 1
        assert "rebasing with protected branch 'main'" in result.stderr

    def test_rebase_of_protected_branch_rejected(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        _commit(git_repo, "a.txt")
        git(git_repo, "remote", "add", "origin", "/nonexistent")

        result = _run_hook(git_repo, "pre-rebase", "origin/topic", "master")

        assert result.returncode == 1

    def test_rebase_between_feature_branches_allowed(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        _commit(git_repo, "a.txt")
        git(git_repo, "checkout", "-q", "-b", "feature")

        result = _run_hook(git_repo, "pre-rebase", "topic")

        assert result.returncode == 0, result.stderr

    def test_remote_prefixed_protected_branch_detected(self, git_repo):
        install_hooks(git_repo / ".git" / "hooks")
        _commit(git_repo, "a.txt")
        git(git_repo, "checkout", "-q", "-b", "feature")
        git(git_repo, "remote", "add", "origin", "/nonexistent")

        result = _run_hook(git_repo, "pre-rebase", "origin/main")

        assert result.returncode == 1
