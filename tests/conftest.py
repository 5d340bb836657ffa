"""
Pytest fixtures for BubbLM tests.
"""
import os
import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from core.compiler import PolicySettings


SYNTHETIC_HOME = "/home/dev"


def exists_in(*paths):
    """Fake `exists` for the compiler: only the given paths exist."""
    known = {os.path.normpath(p) for p in paths}
    return lambda p: os.path.normpath(p) in known


@pytest.fixture
def temp_repo():
    """Create a temporary directory simulating a repo checkout (with .git/hooks)."""
    with tempfile.TemporaryDirectory() as tmpdir:
        repo = Path(tmpdir)
        (repo / ".git" / "hooks").mkdir(parents=True)
        yield repo


@pytest.fixture
def temp_home(tmp_path):
    """A real, empty home directory."""
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
def synthetic_settings():
    """Static tables that never touch the real filesystem."""
    return PolicySettings(
        system_roots=("/usr", "/bin", "/lib", "/lib64", "/etc"),
        scratch_paths=("/tmp", "/var/tmp"),
        redirected_paths=(),
        cache_paths=(".npm", ".cargo", ".rustup"),
        app_config_paths=(),
        db_candidates={
            "mysql": ("/var/run/mysqld", "/run/mysqld", "/var/lib/mysql"),
            "postgres": ("/var/run/postgresql", "/var/lib/postgresql"),
        },
    )


@pytest.fixture
def synthetic_exists():
    return exists_in(
        "/usr", "/bin", "/lib", "/etc", "/tmp", "/var/tmp",
        SYNTHETIC_HOME, f"{SYNTHETIC_HOME}/.npm", f"{SYNTHETIC_HOME}/.cargo",
    )


needs_git = pytest.mark.skipif(
    shutil.which("git") is None or shutil.which("bash") is None,
    reason="git and bash are required for hook integration tests",
)


def git(repo: Path, *args, check=True, input=None):
    return subprocess.run(
        ["git", "-c", "user.name=Hook Test", "-c", "user.email=hooks@example.com",
         "-c", "commit.gpgsign=false", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        input=input,
        check=check,
    )


@pytest.fixture
def git_repo(tmp_path):
    """A real git repository whose hooks live in .git/hooks."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    hooks = repo / ".git" / "hooks"
    hooks.mkdir(exist_ok=True)
    # A global core.hooksPath would bypass .git/hooks
    git(repo, "config", "core.hooksPath", str(hooks))
    return repo
