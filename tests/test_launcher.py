"""
Tests for core/launcher.py - preflight, environment and launch.
"""
import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from core.backends import BWRAP, FIREJAIL, ResolvedBackend
from core.compiler import MountPlan
from core.launcher import (
    LaunchFailure,
    PreflightError,
    SandboxSession,
    build_environment,
    describe_session,
    launch,
    resolve_backend,
    resolve_command,
)
from core.policy import Baseline, Mode, Policy


@pytest.fixture
def session():
    policy = Policy(baseline=Baseline.DEFAULT_DENY)
    policy.add("/usr", Mode.READ_ONLY)
    policy.add("/work", Mode.READ_WRITE)
    plan = MountPlan(policy=policy, project_dir="/work", resolved_dbs=["mysql"])
    return SandboxSession(
        backend=ResolvedBackend(spec=BWRAP, executable="/usr/bin/bwrap"),
        plan=plan,
        workdir="/work",
        command=["claude", "--dangerously-skip-permissions"],
        env={"BUBBLM_SANDBOX": "1"},
    )


class TestResolveBackend:
    def test_returns_probed_backend(self):
        found = ResolvedBackend(spec=BWRAP, executable="/usr/bin/bwrap")
        with patch("core.launcher.probe_backend", return_value=found):
            assert resolve_backend() is found

    def test_missing_explicit_backend_names_it(self):
        with patch("core.launcher.probe_backend", return_value=None):
            with pytest.raises(PreflightError) as exc:
                resolve_backend("firejail")
        assert "firejail" in str(exc.value)
        assert FIREJAIL.install_hint in str(exc.value)

    def test_no_backend_lists_install_hints(self):
        with patch("core.launcher.probe_backend", return_value=None):
            with pytest.raises(PreflightError) as exc:
                resolve_backend("auto")
        assert BWRAP.install_hint in str(exc.value)
        assert FIREJAIL.install_hint in str(exc.value)


class TestResolveCommand:
    def test_found_in_search_path(self, tmp_path):
        exe = tmp_path / "claude"
        exe.write_text("#!/bin/sh\n")
        exe.chmod(exe.stat().st_mode | stat.S_IXUSR)
        assert resolve_command(["claude"], str(tmp_path)) == str(exe)

    def test_not_found(self, tmp_path):
        with pytest.raises(PreflightError, match="not found"):
            resolve_command(["claude"], str(tmp_path))

    def test_explicit_path_must_be_executable(self, tmp_path):
        script = tmp_path / "run.sh"
        script.write_text("echo hi\n")
        script.chmod(0o644)
        with pytest.raises(PreflightError):
            resolve_command([str(script)])

    def test_empty_command(self):
        with pytest.raises(PreflightError):
            resolve_command([])


class TestBuildEnvironment:
    def test_advertises_overrides(self):
        env = build_environment(
            {"PATH": "/usr/bin", "HOME": "/home/dev"},
            resolved_dbs=["mysql", "sqlite:/srv/app.db"],
            writable_paths=["/data", "/srv/out"],
            baseline="default-deny",
        )
        assert env["BUBBLM_SANDBOX"] == "1"
        assert env["BUBBLM_WRITABLE_DBS"] == "mysql,sqlite:/srv/app.db"
        assert env["BUBBLM_EXTRA_WRITE_PATHS"] == "/data:/srv/out"
        assert env["BUBBLM_BASELINE"] == "default-deny"
        assert env["PATH"] == "/usr/bin"

    def test_only_allowlisted_variables_propagate(self):
        env = build_environment({"PATH": "/bin", "AWS_SECRET_ACCESS_KEY": "x", "LC_ALL": "C", "EDITOR": "vi"},
                                extra_names=["EDITOR"])
        assert "AWS_SECRET_ACCESS_KEY" not in env
        assert env["LC_ALL"] == "C"
        assert env["EDITOR"] == "vi"

    def test_lang_default(self):
        assert build_environment({})["LANG"] == "en_US.UTF-8"
        assert build_environment({"LANG": "C.UTF-8"})["LANG"] == "C.UTF-8"

    def test_empty_overrides_still_set(self):
        env = build_environment({})
        assert env["BUBBLM_WRITABLE_DBS"] == ""
        assert env["BUBBLM_EXTRA_WRITE_PATHS"] == ""


class TestLaunch:
    def test_dry_run_returns_argv_without_exec(self, session):
        with patch("core.launcher.os.execv") as execv:
            argv = launch(session, dry_run=True)
        execv.assert_not_called()
        assert argv[0] == "/usr/bin/bwrap"
        assert argv[-3:] == ["--", "claude", "--dangerously-skip-permissions"]

    def test_exec_replaces_process(self, session):
        with patch("core.launcher.os.execv") as execv:
            launch(session)
        execv.assert_called_once()
        path, argv = execv.call_args[0]
        assert path == "/usr/bin/bwrap"
        assert argv == session.invocation().argv

    def test_exec_failure(self, session):
        with patch("core.launcher.os.execv", side_effect=OSError(2, "No such file")):
            with pytest.raises(LaunchFailure):
                launch(session)

    def test_firejail_changes_directory_first(self, session, tmp_path):
        session.backend = ResolvedBackend(spec=FIREJAIL, executable="/usr/bin/firejail")
        session.workdir = str(tmp_path)
        cwd = os.getcwd()
        try:
            with patch("core.launcher.os.execv"):
                launch(session)
            assert Path(os.getcwd()).resolve() == tmp_path.resolve()
        finally:
            os.chdir(cwd)

    def test_describe_session(self, session):
        lines = describe_session(session)
        assert lines[0] == "Backend: bwrap (/usr/bin/bwrap)"
        assert "Writable databases: mysql" in lines
        assert lines[-1] == "Command: claude --dangerously-skip-permissions"
