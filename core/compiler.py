"""
Policy compiler for BubbLM.

Turns normalized write requests into an ordered mount plan. The order of
emission is the whole point: bind directives are applied left to right and
a later directive covering an overlapping path replaces an earlier one for
that subtree.

Emission order:
1. read-only system roots
2. read-only home tree
3. read-write overrides inside the home tree and scratch space:
   scratch dirs, redirected home dirs, package-manager caches,
   application config, project dir (last)
4. requested databases
5. requested writable paths
6. read-only re-assertion of the project's git hook directory

Redirected home dirs (~/.cache, ~/.config, ~/.local) are backed by private
directories under ~/.claude-sandbox, never by the host directories.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.databases import DATABASE_CANDIDATES, resolve_database
from core.policy import Baseline, Mode, Policy, normalize_path, verify_plan_order

logger = logging.getLogger(__name__)


DEFAULT_SYSTEM_ROOTS: Tuple[str, ...] = ("/usr", "/bin", "/sbin", "/lib", "/lib64", "/etc", "/sys")
DEFAULT_SCRATCH_PATHS: Tuple[str, ...] = ("/tmp", "/var/tmp")

# Home-relative private root backing the redirected directories
DEFAULT_PRIVATE_ROOT = ".claude-sandbox"

# (home-relative path seen in the sandbox, directory name under the private root)
REDIRECTED_HOME_PATHS: Tuple[Tuple[str, str], ...] = (
    (".cache", "cache"),
    (".config", "config"),
    (".local", "local"),
)

# Bound in place, only when present on the host
KNOWN_CACHE_PATHS: Tuple[str, ...] = (
    ".npm",
    ".yarn",
    ".pnpm",
    ".cargo",
    ".rustup",
    ".poetry",
    ".pyenv",
    ".rbenv",
    ".nvm",
    ".composer",
)

# Trailing slash marks a directory; anything else is a file
DEFAULT_APP_CONFIG_PATHS: Tuple[str, ...] = (".claude/", ".claude.json")


class PolicyResolutionWarning(UserWarning):
    """A requested override could not be turned into a rule."""


@dataclass
class PolicySettings:
    """Static tables the compiler draws its baseline from."""

    system_roots: Sequence[str] = DEFAULT_SYSTEM_ROOTS
    scratch_paths: Sequence[str] = DEFAULT_SCRATCH_PATHS
    private_root: str = DEFAULT_PRIVATE_ROOT
    redirected_paths: Sequence[Tuple[str, str]] = REDIRECTED_HOME_PATHS
    cache_paths: Sequence[str] = KNOWN_CACHE_PATHS
    app_config_paths: Sequence[str] = DEFAULT_APP_CONFIG_PATHS
    db_candidates: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DATABASE_CANDIDATES)
    )

    @classmethod
    def from_config(cls, config: dict) -> "PolicySettings":
        extra_caches = [str(p) for p in config.get("cache_paths") or []]
        return cls(
            system_roots=tuple(config.get("system_roots") or DEFAULT_SYSTEM_ROOTS),
            scratch_paths=tuple(config.get("scratch_paths") or DEFAULT_SCRATCH_PATHS),
            private_root=config.get("private_root") or DEFAULT_PRIVATE_ROOT,
            cache_paths=tuple(KNOWN_CACHE_PATHS) + tuple(extra_caches),
            app_config_paths=tuple(config.get("app_config_paths") or DEFAULT_APP_CONFIG_PATHS),
        )


@dataclass
class MountPlan:
    policy: Policy
    project_dir: str
    hooks_dir: Optional[str] = None
    resolved_dbs: List[str] = field(default_factory=list)
    writable_paths: List[str] = field(default_factory=list)
    warnings: List[PolicyResolutionWarning] = field(default_factory=list)

    @property
    def rules(self):
        return self.policy.rules


def _ensure_dir(path: Path) -> Optional[str]:
    """Create `path` (and parents); return an error string on failure."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return str(e)
    if not path.is_dir():
        return f"{path} exists and is not a directory"
    return None


def _ensure_file(path: Path) -> Optional[str]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
    except OSError as e:
        return str(e)
    return None


class PolicyCompiler:
    """
    Compiles write requests into a MountPlan for one project directory.

    `exists` is the only filesystem query used for optional paths, so tests
    can drive the compiler against synthetic trees. With `create_missing`
    off (dry runs) nothing is created; rules are emitted as if creation
    had succeeded. `redirect_home` is off for backends that cannot bind a
    source path onto a different destination; the redirected directories
    then stay read-only.
    """

    def __init__(
        self,
        home: Path,
        *,
        baseline: Baseline = Baseline.DEFAULT_DENY,
        settings: Optional[PolicySettings] = None,
        exists: Callable[[str], bool] = os.path.exists,
        create_missing: bool = True,
        redirect_home: bool = True,
    ) -> None:
        self.home = Path(normalize_path(home))
        self.baseline = baseline
        self.settings = settings or PolicySettings()
        self.exists = exists
        self.create_missing = create_missing
        self.redirect_home = redirect_home

    @property
    def private_root(self) -> Path:
        return self.home / self.settings.private_root

    def compile(
        self,
        project_dir: Path,
        writable_paths: Sequence[Path] = (),
        writable_dbs: Sequence[str] = (),
        hooks_dir: Optional[Path] = None,
    ) -> MountPlan:
        project = normalize_path(project_dir)
        plan = MountPlan(
            policy=Policy(baseline=self.baseline),
            project_dir=project,
            hooks_dir=normalize_path(hooks_dir) if hooks_dir is not None else None,
        )

        self._emit_system_roots(plan)
        plan.policy.add(self.home, Mode.READ_ONLY)
        self._emit_scratch(plan)
        self._emit_redirected(plan)
        self._emit_caches(plan)
        self._emit_app_config(plan)
        plan.policy.add(project, Mode.READ_WRITE)
        self._emit_databases(plan, writable_dbs, Path(project))
        self._emit_writable_paths(plan, writable_paths)
        if plan.hooks_dir is not None:
            plan.policy.add(plan.hooks_dir, Mode.READ_ONLY)

        verify_plan_order(plan.policy, project, plan.hooks_dir)
        for warning in plan.warnings:
            logger.warning("%s", warning)
        return plan

    def _warn(self, plan: MountPlan, message: str) -> None:
        plan.warnings.append(PolicyResolutionWarning(message))

    def _make_dir(self, path: Path) -> Optional[str]:
        if not self.create_missing:
            logger.debug("Not creating %s", path)
            return None
        return _ensure_dir(path)

    def _make_file(self, path: Path) -> Optional[str]:
        if not self.create_missing:
            logger.debug("Not creating %s", path)
            return None
        return _ensure_file(path)

    def _emit_system_roots(self, plan: MountPlan) -> None:
        for root in self.settings.system_roots:
            if self.exists(root):
                plan.policy.add(root, Mode.READ_ONLY)
            else:
                logger.debug("Skipping missing system root %s", root)

    def _emit_scratch(self, plan: MountPlan) -> None:
        for scratch in self.settings.scratch_paths:
            if self.exists(scratch):
                plan.policy.add(scratch, Mode.READ_WRITE)

    def _emit_redirected(self, plan: MountPlan) -> None:
        if not self.redirect_home:
            logger.debug("Backend cannot redirect binds; %s stay read-only",
                         ", ".join(rel for rel, _ in self.settings.redirected_paths))
            return
        for rel, name in self.settings.redirected_paths:
            source = self.private_root / name
            error = self._make_dir(source)
            if error:
                self._warn(plan, f"Cannot create private directory {source}: {error}")
                continue
            plan.policy.add(self.home / rel, Mode.READ_WRITE, source=source)

    def _emit_caches(self, plan: MountPlan) -> None:
        for rel in self.settings.cache_paths:
            path = self.home / rel
            if self.exists(str(path)):
                plan.policy.add(path, Mode.READ_WRITE_IF_EXISTS)

    def _emit_app_config(self, plan: MountPlan) -> None:
        for entry in self.settings.app_config_paths:
            is_dir = entry.endswith("/")
            path = self.home / entry.rstrip("/")
            error = self._make_dir(path) if is_dir else self._make_file(path)
            if error:
                self._warn(plan, f"Cannot create application config {path}: {error}")
                continue
            plan.policy.add(path, Mode.READ_WRITE)

    def _emit_databases(self, plan: MountPlan, writable_dbs: Sequence[str], cwd: Path) -> None:
        for ident in writable_dbs:
            resolution = resolve_database(
                ident, self.settings.db_candidates, exists=self.exists, cwd=cwd
            )
            if not resolution.resolved:
                self._warn(plan, f"Database '{ident}' ignored: {resolution.problem}")
                continue
            for path in resolution.paths:
                plan.policy.add(path, Mode.READ_WRITE)
            plan.resolved_dbs.append(resolution.identifier)

    def _emit_writable_paths(self, plan: MountPlan, writable_paths: Sequence[Path]) -> None:
        for raw in writable_paths:
            path = Path(normalize_path(raw))
            if not self.exists(str(path)):
                error = self._make_dir(path)
                if error:
                    self._warn(plan, f"Writable path {path} ignored: {error}")
                    continue
                if self.create_missing:
                    logger.info("Created writable path %s", path)
            plan.policy.add(path, Mode.READ_WRITE)
            plan.writable_paths.append(str(path))
