"""
Sandbox launcher for BubbLM.

Preflight (backend + command resolution) happens before any plan or session
state exists. launch() replaces the current process with the backend, so
the launched command's exit status becomes ours and there is no teardown.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from core.backends import BACKENDS, BackendInvocation, ResolvedBackend, probe_backend, serialize
from core.compiler import MountPlan
from core.observability import log_audit_event

logger = logging.getLogger(__name__)


class PreflightError(Exception):
    """Backend or target command cannot be resolved; nothing was launched."""


class LaunchFailure(Exception):
    """The backend could not be executed."""


# Variables copied from the caller's environment when set
PROPAGATED_ENV: tuple[str, ...] = (
    "HOME",
    "USER",
    "LOGNAME",
    "PATH",
    "SHELL",
    "TERM",
    "COLORTERM",
    "LANG",
    "LANGUAGE",
    "DISPLAY",
)
PROPAGATED_ENV_PREFIXES: tuple[str, ...] = ("LC_",)
DEFAULT_LANG = "en_US.UTF-8"


@dataclass
class SandboxSession:
    backend: ResolvedBackend
    plan: MountPlan
    workdir: str
    command: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    unshare: bool = False

    def invocation(self) -> BackendInvocation:
        return serialize(
            self.backend.spec,
            self.plan.policy,
            executable=self.backend.executable,
            workdir=self.workdir,
            env=self.env,
            command=self.command,
            unshare=self.unshare,
        )


def resolve_backend(preferred: Optional[str] = None) -> ResolvedBackend:
    backend = probe_backend(preferred)
    if backend is not None:
        return backend
    if preferred and preferred != "auto":
        spec = BACKENDS[preferred]
        raise PreflightError(
            f"Isolation backend '{spec.binary}' is not installed. Install it first:\n  {spec.install_hint}"
        )
    hints = "\n  ".join(BACKENDS[name].install_hint for name in BACKENDS)
    raise PreflightError(
        "No isolation backend found (tried: " + ", ".join(BACKENDS) + "). Install one:\n  " + hints
    )


def resolve_command(command: Sequence[str], search_path: Optional[str] = None) -> str:
    """Return the absolute path of the target executable or raise PreflightError."""
    if not command:
        raise PreflightError("No command to run")
    program = command[0]
    if "/" in program:
        if os.path.isfile(program) and os.access(program, os.X_OK):
            return os.path.abspath(program)
        raise PreflightError(f"Command '{program}' is not an executable file")
    found = shutil.which(program, path=search_path)
    if not found:
        raise PreflightError(f"Command '{program}' not found in PATH")
    return found


def build_environment(
    environ: Mapping[str, str],
    *,
    resolved_dbs: Sequence[str] = (),
    writable_paths: Sequence[str] = (),
    extra_names: Sequence[str] = (),
    baseline: Optional[str] = None,
) -> Dict[str, str]:
    """
    Environment handed to the sandboxed command.

    BUBBLM_WRITABLE_DBS advertises the databases that actually got rules;
    identifiers are comma-joined because sqlite identifiers contain colons.
    """
    env: Dict[str, str] = {}
    for name in tuple(PROPAGATED_ENV) + tuple(extra_names):
        if name in environ and name not in env:
            env[name] = environ[name]
    for name in sorted(environ):
        if name.startswith(PROPAGATED_ENV_PREFIXES):
            env[name] = environ[name]
    env.setdefault("LANG", DEFAULT_LANG)

    env["BUBBLM_SANDBOX"] = "1"
    env["BUBBLM_WRITABLE_DBS"] = ",".join(resolved_dbs)
    env["BUBBLM_EXTRA_WRITE_PATHS"] = ":".join(writable_paths)
    if baseline:
        env["BUBBLM_BASELINE"] = baseline
    return env


def describe_session(session: SandboxSession) -> List[str]:
    lines = [
        f"Backend: {session.backend.spec.name} ({session.backend.executable})",
        f"Working directory: {session.workdir} (writable)",
        f"Baseline: {session.plan.policy.baseline.value}",
    ]
    if session.plan.hooks_dir:
        lines.append(f"Git hooks: {session.plan.hooks_dir} (read-only)")
    if session.plan.resolved_dbs:
        lines.append("Writable databases: " + ", ".join(session.plan.resolved_dbs))
    if session.plan.writable_paths:
        lines.append("Extra writable paths: " + ", ".join(session.plan.writable_paths))
    lines.append("Command: " + shlex.join(session.command))
    return lines


def launch(session: SandboxSession, *, dry_run: bool = False) -> List[str]:
    """
    Hand the process over to the isolation backend.

    Returns the argv only in dry-run mode; otherwise it does not return.

    Raises:
        LaunchFailure: exec itself failed.
    """
    invocation = session.invocation()
    log_audit_event(
        "sandbox_launch",
        "dry_run" if dry_run else "exec",
        metadata={
            "backend": session.backend.spec.name,
            "workdir": session.workdir,
            "command": session.command,
            "rules": len(session.plan.policy),
            "writable_dbs": session.plan.resolved_dbs,
            "writable_paths": session.plan.writable_paths,
            "env": session.env,
        },
    )
    if dry_run:
        return invocation.argv

    if invocation.chdir:
        os.chdir(invocation.chdir)
    logger.info("Starting in sandbox...")
    try:
        os.execv(invocation.argv[0], invocation.argv)
    except OSError as e:
        raise LaunchFailure(f"Could not execute {invocation.argv[0]}: {e}") from e
    return invocation.argv  # pragma: no cover - execv does not return
