"""
Ordered access policy for BubbLM sandboxes.

A policy is an ordered list of AccessRule entries applied left to right on
top of a baseline. The isolation backends bind paths positionally, so the
rule that wins for any path is the LAST rule whose path is that path or one
of its ancestors. Nothing here is a set or a mapping: order is the contract.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional


class Mode(str, Enum):
    READ_ONLY = "ro"
    READ_WRITE = "rw"
    READ_WRITE_IF_EXISTS = "rw-try"

    @property
    def writable(self) -> bool:
        return self in (Mode.READ_WRITE, Mode.READ_WRITE_IF_EXISTS)


class Baseline(str, Enum):
    """What a path with no applicable rule looks like inside the sandbox."""

    DEFAULT_DENY = "default-deny"
    DEFAULT_READ_ONLY = "default-read-only"


class Access(str, Enum):
    NONE = "none"
    READ = "read"
    WRITE = "write"


class PolicyOrderError(Exception):
    """Raised when a compiled policy violates an ordering invariant."""


def normalize_path(path) -> str:
    """Lexically normalize to an absolute POSIX path string (no symlink resolution)."""
    text = os.fspath(path)
    if not text.startswith("/"):
        raise ValueError(f"Policy paths must be absolute: {text!r}")
    return os.path.normpath(text).replace("//", "/")


def covers(ancestor: str, path: str) -> bool:
    """True if `ancestor` equals `path` or is one of its parent directories."""
    if ancestor == path or ancestor == "/":
        return True
    return path.startswith(ancestor.rstrip("/") + "/")


@dataclass(frozen=True)
class AccessRule:
    """
    One bind directive: expose `path` inside the sandbox with `mode`.

    `source` is the host path bound onto `path`; it defaults to `path`.
    """

    path: str
    mode: Mode
    source: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_path(self.path))
        if self.source is not None:
            object.__setattr__(self, "source", normalize_path(self.source))

    @property
    def host_path(self) -> str:
        return self.source or self.path

    def applies_to(self, path: str) -> bool:
        return covers(self.path, path)

    def __str__(self) -> str:
        if self.source and self.source != self.path:
            return f"{self.mode.value:7} {self.source} -> {self.path}"
        return f"{self.mode.value:7} {self.path}"


@dataclass
class Policy:
    """Ordered AccessRule sequence plus a baseline; last applicable rule wins."""

    baseline: Baseline = Baseline.DEFAULT_DENY
    rules: List[AccessRule] = field(default_factory=list)

    def add(self, path, mode: Mode, source=None) -> AccessRule:
        rule = AccessRule(path=os.fspath(path), mode=mode,
                          source=os.fspath(source) if source is not None else None)
        self.rules.append(rule)
        return rule

    def __iter__(self) -> Iterator[AccessRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def effective_rule(self, path) -> Optional[AccessRule]:
        target = normalize_path(path)
        for rule in reversed(self.rules):
            if rule.applies_to(target):
                return rule
        return None

    def access(self, path) -> Access:
        """Access level a sandboxed process gets for `path`."""
        rule = self.effective_rule(path)
        if rule is None:
            return Access.READ if self.baseline is Baseline.DEFAULT_READ_ONLY else Access.NONE
        return Access.WRITE if rule.mode.writable else Access.READ

    def can_write(self, path) -> bool:
        return self.access(path) is Access.WRITE

    def can_read(self, path) -> bool:
        return self.access(path) is not Access.NONE

    def index_of(self, path, mode: Optional[Mode] = None) -> int:
        """Index of the last rule bound exactly at `path` (optionally with `mode`), or -1."""
        target = normalize_path(path)
        for idx in range(len(self.rules) - 1, -1, -1):
            rule = self.rules[idx]
            if rule.path == target and (mode is None or rule.mode is mode):
                return idx
        return -1

    def describe(self) -> List[str]:
        return [f"{idx:3d}  {rule}" for idx, rule in enumerate(self.rules)]


def verify_plan_order(policy: Policy, project_dir, hooks_dir=None) -> None:
    """
    Check the two ordering invariants of a compiled policy.

    - the project write rule comes after every rule covering one of its ancestors
    - the hook directory re-restriction comes after the project write rule
    """
    project = normalize_path(project_dir)
    project_idx = policy.index_of(project, Mode.READ_WRITE)
    if project_idx < 0:
        raise PolicyOrderError(f"No read-write rule for project directory {project}")

    for idx, rule in enumerate(policy.rules):
        if idx > project_idx and rule.path != project and covers(rule.path, project) \
                and not rule.mode.writable:
            raise PolicyOrderError(
                f"Rule #{idx} ({rule}) re-restricts an ancestor of {project} "
                f"after the project rule #{project_idx}"
            )

    if hooks_dir is None:
        return
    hooks = normalize_path(hooks_dir)
    hooks_idx = policy.index_of(hooks, Mode.READ_ONLY)
    if hooks_idx < 0:
        raise PolicyOrderError(f"No read-only rule for hook directory {hooks}")
    if covers(project, hooks) and hooks_idx < project_idx:
        raise PolicyOrderError(
            f"Hook directory rule #{hooks_idx} precedes project rule #{project_idx}"
        )
    for idx in range(hooks_idx + 1, len(policy.rules)):
        rule = policy.rules[idx]
        if rule.mode.writable and covers(rule.path, hooks):
            raise PolicyOrderError(
                f"Rule #{idx} ({rule}) re-opens hook directory {hooks} for writing"
            )
