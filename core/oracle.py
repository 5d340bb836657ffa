"""
Sandbox boundary test oracle.

A fixed catalog of filesystem probes and, separately, the outcome each probe
should have under each baseline. The catalog never changes when policy
changes on purpose; only EXPECTATIONS does.

Probes can be evaluated two ways:
- predict(): statically, against a compiled Policy (no sandbox needed)
- run_probe(): for real, from inside a running sandbox session
"""
from __future__ import annotations

import json
import os
import shutil
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.policy import Baseline, Policy, normalize_path


class Outcome(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class Action(str, Enum):
    WRITE = "write"          # create a file at target (parents must exist)
    MKDIR = "mkdir"          # create a nested directory tree at target
    READ = "read"            # read a file or list a directory
    SYMLINK_WRITE = "symlink-write"  # append through a symlink in the project pointing at target


@dataclass(frozen=True)
class Probe:
    name: str
    action: Action
    target: str
    description: str = ""

    def resolve(self, context: "ProbeContext") -> Optional[str]:
        """Concrete target path, or None when the context lacks a hook directory."""
        if "{hooks}" in self.target and context.hooks_dir is None:
            return None
        return self.target.format(
            project=context.project_dir,
            home=context.home,
            parent=os.path.dirname(context.project_dir.rstrip("/")) or "/",
            hooks=context.hooks_dir,
            token=context.token,
        )


@dataclass
class ProbeContext:
    project_dir: str
    home: str
    # Hook directory git actually uses (repo root, common dir for worktrees)
    hooks_dir: Optional[str] = None
    token: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


class Status(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    SKIPPED = "SKIPPED"


@dataclass
class ProbeResult:
    probe: str
    target: str
    expected: Outcome
    observed: Optional[Outcome]
    status: Status
    failure_kind: Optional[str] = None
    detail: str = ""


PROBES: tuple[Probe, ...] = (
    Probe("project-write", Action.WRITE, "{project}/.bubblm-probe-{token}",
          "Create a file in the project directory"),
    Probe("project-nested-mkdir", Action.MKDIR, "{project}/.bubblm-probe-{token}/a/b/c",
          "Create a nested directory tree in the project"),
    Probe("project-hooks-write", Action.WRITE, "{hooks}/bubblm-probe-{token}",
          "Write into the project's git hook directory"),
    Probe("tmp-write", Action.WRITE, "/tmp/bubblm-probe-{token}",
          "Write to /tmp"),
    Probe("var-tmp-write", Action.WRITE, "/var/tmp/bubblm-probe-{token}",
          "Write to /var/tmp"),
    Probe("home-cache-write", Action.MKDIR, "{home}/.cache/bubblm-probe-{token}",
          "Create a directory in ~/.cache"),
    Probe("home-root-write", Action.WRITE, "{home}/.bubblm-probe-{token}",
          "Write directly into the home directory"),
    Probe("parent-write", Action.WRITE, "{parent}/.bubblm-probe-{token}",
          "Write next to the project directory"),
    Probe("etc-write", Action.WRITE, "/etc/bubblm-probe-{token}.conf",
          "Write to /etc"),
    Probe("tmp-traversal-write", Action.WRITE, "/tmp/../../etc/bubblm-probe-{token}",
          "Escape /tmp with .. components"),
    Probe("symlink-passwd-write", Action.SYMLINK_WRITE, "/etc/passwd",
          "Append to /etc/passwd through a symlink in the project"),
    Probe("dev-null-write", Action.WRITE, "/dev/null",
          "Write to /dev/null"),
    Probe("etc-hosts-read", Action.READ, "/etc/hosts",
          "Read /etc/hosts"),
    Probe("var-lib-read", Action.READ, "/var/lib",
          "List /var/lib (not covered by any rule)"),
)

_COMMON: Dict[str, Outcome] = {
    "project-write": Outcome.ALLOW,
    "project-nested-mkdir": Outcome.ALLOW,
    "project-hooks-write": Outcome.DENY,
    "tmp-write": Outcome.ALLOW,
    "var-tmp-write": Outcome.ALLOW,
    "home-root-write": Outcome.DENY,
    "parent-write": Outcome.DENY,
    "etc-write": Outcome.DENY,
    "tmp-traversal-write": Outcome.DENY,
    "symlink-passwd-write": Outcome.DENY,
    "dev-null-write": Outcome.ALLOW,
    "etc-hosts-read": Outcome.ALLOW,
}

EXPECTATIONS: Dict[Baseline, Dict[str, Outcome]] = {
    # ~/.cache is a private read-write directory only where binds can be redirected
    Baseline.DEFAULT_DENY: {**_COMMON, "home-cache-write": Outcome.ALLOW, "var-lib-read": Outcome.DENY},
    Baseline.DEFAULT_READ_ONLY: {**_COMMON, "home-cache-write": Outcome.DENY, "var-lib-read": Outcome.ALLOW},
}

# Device and pseudo filesystems are mounted by the backend itself, not by rules
_BACKEND_MOUNTS = ("/dev", "/proc")


def expected_outcome(probe: Probe, baseline: Baseline) -> Outcome:
    return EXPECTATIONS[baseline][probe.name]


def predict(policy: Policy, probe: Probe, context: ProbeContext) -> Outcome:
    """Outcome the policy should produce for `probe`, without running anything."""
    target = probe.resolve(context)
    if target is None:
        raise ValueError(f"{probe.name} has no target in this context")
    target = normalize_path(target)
    if any(target == m or target.startswith(m + "/") for m in _BACKEND_MOUNTS):
        return Outcome.ALLOW
    if probe.action is Action.READ:
        return Outcome.ALLOW if policy.can_read(target) else Outcome.DENY
    if probe.action is Action.SYMLINK_WRITE:
        # The link itself lives in the project; the write lands on the target
        return Outcome.ALLOW if policy.can_write(target) else Outcome.DENY
    return Outcome.ALLOW if policy.can_write(target) else Outcome.DENY


def _probe_root(target: str, context: ProbeContext) -> str:
    """Top-most path component of `target` that carries this run's probe token."""
    marker = f"bubblm-probe-{context.token}"
    head = target
    while os.path.basename(head) and marker not in os.path.basename(head):
        head = os.path.dirname(head)
    return head if os.path.basename(head) else target


def run_probe(probe: Probe, context: ProbeContext) -> tuple[Outcome, str]:
    """Attempt the probe's operation for real; clean up anything it created."""
    target = probe.resolve(context)
    if target is None:
        raise ValueError(f"{probe.name} has no target in this context")
    try:
        if probe.action is Action.WRITE:
            if target == "/dev/null":
                with open(target, "w", encoding="utf-8") as f:
                    f.write("bubblm probe\n")
                return Outcome.ALLOW, "written"
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            os.close(fd)
            os.unlink(target)
            return Outcome.ALLOW, "created"
        if probe.action is Action.MKDIR:
            os.makedirs(target)
            shutil.rmtree(_probe_root(target, context), ignore_errors=True)
            return Outcome.ALLOW, "created"
        if probe.action is Action.READ:
            if os.path.isdir(target):
                os.listdir(target)
            else:
                with open(target, "rb") as f:
                    f.read(1)
            return Outcome.ALLOW, "read"
        if probe.action is Action.SYMLINK_WRITE:
            link = os.path.join(context.project_dir, f".bubblm-link-{context.token}")
            os.symlink(target, link)
            try:
                with open(link, "a", encoding="utf-8"):
                    pass
            finally:
                os.unlink(link)
            return Outcome.ALLOW, "opened for append through symlink"
    except OSError as e:
        return Outcome.DENY, f"{type(e).__name__}: {e.strerror or e}"
    raise ValueError(f"Unknown probe action: {probe.action}")


def classify(probe: Probe, expected: Outcome, observed: Outcome, target: str = "", detail: str = "") -> ProbeResult:
    if expected is observed:
        return ProbeResult(probe.name, target, expected, observed, Status.SUCCESS, detail=detail)
    kind = "security-leak" if expected is Outcome.DENY else "over-restriction"
    return ProbeResult(probe.name, target, expected, observed, Status.FAILURE, kind, detail)


def _skipped(check: Probe, expected: Outcome) -> ProbeResult:
    return ProbeResult(check.name, "", expected, None, Status.SKIPPED,
                       detail="project is not inside a git repository")


def run_catalog(
    context: ProbeContext,
    baseline: Baseline,
    probes: Sequence[Probe] = PROBES,
) -> List[ProbeResult]:
    results = []
    for probe in probes:
        expected = expected_outcome(probe, baseline)
        target = probe.resolve(context)
        if target is None:
            results.append(_skipped(probe, expected))
            continue
        observed, detail = run_probe(probe, context)
        results.append(classify(probe, expected, observed, target, detail))
    return results


def check_policy(
    policy: Policy,
    context: ProbeContext,
    probes: Sequence[Probe] = PROBES,
) -> List[ProbeResult]:
    """Evaluate the catalog statically against a compiled policy."""
    results = []
    for probe in probes:
        expected = expected_outcome(probe, policy.baseline)
        target = probe.resolve(context)
        if target is None:
            results.append(_skipped(probe, expected))
            continue
        results.append(classify(probe, expected, predict(policy, probe, context), target))
    return results


def summarize(results: Sequence[ProbeResult]) -> Dict[str, int]:
    failures = [r for r in results if r.status is Status.FAILURE]
    return {
        "total": len(results),
        "passed": sum(1 for r in results if r.status is Status.SUCCESS),
        "skipped": sum(1 for r in results if r.status is Status.SKIPPED),
        "security_leaks": sum(1 for r in failures if r.failure_kind == "security-leak"),
        "over_restrictions": sum(1 for r in failures if r.failure_kind == "over-restriction"),
    }


def write_report(path: Path, results: Sequence[ProbeResult], baseline: Baseline) -> Path:
    payload = {
        "baseline": baseline.value,
        "summary": summarize(results),
        "results": [
            {
                **asdict(r),
                "expected": r.expected.value,
                "observed": r.observed.value if r.observed is not None else None,
                "status": r.status.value,
            }
            for r in results
        ],
    }
    path = Path(path)
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return path
