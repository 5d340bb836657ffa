"""
Isolation backend descriptors for BubbLM.

Each backend is described by data (BackendSpec): which baseline it starts
from and how each primitive (bind read-only, bind read-write, bind if
exists, chdir, setenv, exec) is spelled. The policy compiler never looks at
these; only serialization does.
"""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.policy import AccessRule, Baseline, Mode, Policy


@dataclass(frozen=True)
class BackendSpec:
    name: str
    binary: str
    baseline: Baseline
    # One argv item per template, formatted with src/dst
    bind_flags: Dict[Mode, Tuple[str, ...]]
    setenv_flag: Tuple[str, ...]
    chdir_flag: Optional[Tuple[str, ...]] = None
    separator: Optional[str] = None
    prelude: Tuple[str, ...] = ()
    unshare_flags: Tuple[str, ...] = ()
    # Backend fails on a missing bind-if-exists target instead of skipping it
    needs_existing_try_targets: bool = False
    # Backend can bind a host path onto a different sandbox path
    supports_redirect: bool = True
    install_hint: str = ""

    def bind_args(self, rule: AccessRule) -> List[str]:
        return [part.format(src=rule.host_path, dst=rule.path) for part in self.bind_flags[rule.mode]]

    def setenv_args(self, key: str, value: str) -> List[str]:
        return [part.format(key=key, value=value) for part in self.setenv_flag]

    def chdir_args(self, path: str) -> List[str]:
        if not self.chdir_flag:
            return []
        return [part.format(path=path) for part in self.chdir_flag]


BWRAP = BackendSpec(
    name="bwrap",
    binary="bwrap",
    baseline=Baseline.DEFAULT_DENY,
    bind_flags={
        Mode.READ_ONLY: ("--ro-bind", "{src}", "{dst}"),
        Mode.READ_WRITE: ("--bind", "{src}", "{dst}"),
        Mode.READ_WRITE_IF_EXISTS: ("--bind-try", "{src}", "{dst}"),
    },
    setenv_flag=("--setenv", "{key}", "{value}"),
    chdir_flag=("--chdir", "{path}"),
    separator="--",
    prelude=("--proc", "/proc", "--dev", "/dev", "--die-with-parent"),
    unshare_flags=("--unshare-all", "--share-net", "--new-session"),
    install_hint="sudo apt-get install bubblewrap  # or: sudo dnf install bubblewrap",
)

# firejail keeps the host root visible; --read-only=/ makes it immutable
FIREJAIL = BackendSpec(
    name="firejail",
    binary="firejail",
    baseline=Baseline.DEFAULT_READ_ONLY,
    bind_flags={
        Mode.READ_ONLY: ("--read-only={dst}",),
        Mode.READ_WRITE: ("--read-write={dst}",),
        Mode.READ_WRITE_IF_EXISTS: ("--read-write={dst}",),
    },
    setenv_flag=("--env={key}={value}",),
    chdir_flag=None,
    separator=None,
    prelude=("--quiet", "--read-only=/"),
    needs_existing_try_targets=True,
    supports_redirect=False,
    install_hint="sudo apt-get install firejail  # or: sudo dnf install firejail",
)

BACKENDS: Dict[str, BackendSpec] = {spec.name: spec for spec in (BWRAP, FIREJAIL)}
PROBE_ORDER: Tuple[str, ...] = ("bwrap", "firejail")


@dataclass
class ResolvedBackend:
    spec: BackendSpec
    executable: str


@dataclass
class BackendInvocation:
    """Fully serialized argv for one sandbox launch."""

    argv: List[str]
    chdir: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


def probe_backend(
    preferred: Optional[str] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Optional[ResolvedBackend]:
    """
    Find an installed backend.

    With `preferred` set to a backend name only that backend is considered;
    "auto" or None probes PROBE_ORDER.
    """
    if preferred and preferred != "auto":
        names: Sequence[str] = (preferred,)
    else:
        names = PROBE_ORDER
    for name in names:
        spec = BACKENDS.get(name)
        if spec is None:
            continue
        path = which(spec.binary)
        if path:
            return ResolvedBackend(spec=spec, executable=path)
    return None


def serialize(
    spec: BackendSpec,
    policy: Policy,
    *,
    executable: str,
    workdir: str,
    env: Dict[str, str],
    command: Sequence[str],
    unshare: bool = False,
    exists: Callable[[str], bool] = os.path.exists,
) -> BackendInvocation:
    """Render a policy plus session details into the backend's argv."""
    argv: List[str] = [executable]
    argv.extend(spec.prelude)
    if unshare:
        argv.extend(spec.unshare_flags)

    for rule in policy:
        if rule.host_path != rule.path and not spec.supports_redirect:
            raise ValueError(f"{spec.name} cannot bind {rule.host_path} onto {rule.path}")
        if rule.mode is Mode.READ_WRITE_IF_EXISTS and spec.needs_existing_try_targets \
                and not exists(rule.host_path):
            continue
        argv.extend(spec.bind_args(rule))

    for key, value in env.items():
        argv.extend(spec.setenv_args(key, value))
    argv.extend(spec.chdir_args(workdir))

    if spec.separator:
        argv.append(spec.separator)
    argv.extend(command)

    return BackendInvocation(
        argv=argv,
        chdir=None if spec.chdir_flag else workdir,
        env=dict(env),
    )
