"""
Hook guard for BubbLM.

Installs protective git hooks into the repository that contains the project
directory. Hooks written by BubbLM carry HOOK_MARKER; any hook file without
it belongs to the user and is never modified.

Installed hooks:
- pre-commit: reject staged files larger than the size limit
- pre-push: reject deleting or force-pushing protected branches
- pre-rebase: reject rebasing a protected branch or onto one

Two concurrent runs may both find a hook missing. Creation is exclusive
(hard link of a fully written temp file), so the loser simply sees an
already-installed hook.
"""
from __future__ import annotations

import logging
import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

HOOK_MARKER = "bubblm-hook-guard: managed"
HOOK_NAMES: tuple[str, ...] = ("pre-commit", "pre-push", "pre-rebase")
DEFAULT_PROTECTED_BRANCHES: tuple[str, ...] = ("main", "master")
DEFAULT_MAX_FILE_BYTES = 50 * 1024 * 1024


class HookInstallWarning(UserWarning):
    """A hook could not be installed (user-authored hook in place, I/O error)."""


@dataclass
class HookRecord:
    name: str
    path: Path
    installed: bool
    foreign: bool


@dataclass
class HookReport:
    hooks_dir: Path
    installed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    foreign: List[str] = field(default_factory=list)
    warnings: List[HookInstallWarning] = field(default_factory=list)


_HEADER = """#!/usr/bin/env bash
# {marker} ({name})
# Installed by bubblm. Remove this file to uninstall; bubblm reinstalls
# it on the next run unless it is replaced by your own hook.
"""

_PROTECTED_FUNCS = """protected=(@PROTECTED@)

short_name() {
    local n="${1#refs/heads/}" r
    n="${n#refs/remotes/}"
    for r in $(git remote 2>/dev/null); do
        case "$n" in
            "$r"/*) n="${n#"$r"/}" ;;
        esac
    done
    printf '%s\\n' "$n"
}

is_protected() {
    local n p
    n="$(short_name "$1")"
    for p in "${protected[@]}"; do
        [ "$n" = "$p" ] && return 0
    done
    return 1
}
"""

_PRE_COMMIT_BODY = """limit=@MAX_BYTES@
status=0
while IFS= read -r -d '' path; do
    size=$(git cat-file -s ":$path" 2>/dev/null) || continue
    if [ "$size" -gt "$limit" ]; then
        echo "bubblm: '$path' is $size bytes; files over $limit bytes cannot be committed" >&2
        status=1
    fi
done < <(git diff --cached --name-only --diff-filter=ACMR -z)
exit $status
"""

_PRE_PUSH_BODY = """is_zero() {
    case "$1" in
        *[!0]*) return 1 ;;
        *) return 0 ;;
    esac
}

status=0
while read -r local_ref local_sha remote_ref remote_sha; do
    case "$remote_ref" in
        refs/heads/*) ;;
        *) continue ;;
    esac
    branch="${remote_ref#refs/heads/}"
    is_protected "$branch" || continue
    if is_zero "$local_sha"; then
        echo "bubblm: deleting protected branch '$branch' is not allowed" >&2
        status=1
    elif ! is_zero "$remote_sha"; then
        if ! git merge-base --is-ancestor "$remote_sha" "$local_sha" 2>/dev/null; then
            echo "bubblm: non-fast-forward push to protected branch '$branch' is not allowed" >&2
            status=1
        fi
    fi
done
exit $status
"""

_PRE_REBASE_BODY = """upstream="$1"
branch="$2"
if [ -z "$branch" ]; then
    branch="$(git symbolic-ref --short -q HEAD 2>/dev/null)"
fi
for name in "$branch" "$upstream"; do
    [ -n "$name" ] || continue
    if is_protected "$name"; then
        echo "bubblm: rebasing with protected branch '$name' is not allowed" >&2
        exit 1
    fi
done
exit 0
"""


def render_hook(
    name: str,
    protected_branches: Sequence[str] = DEFAULT_PROTECTED_BRANCHES,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
) -> str:
    """Return the script text for hook `name`."""
    header = _HEADER.format(marker=HOOK_MARKER, name=name)
    protected = " ".join(shlex.quote(b) for b in protected_branches)
    funcs = _PROTECTED_FUNCS.replace("@PROTECTED@", protected)
    if name == "pre-commit":
        return header + _PRE_COMMIT_BODY.replace("@MAX_BYTES@", str(int(max_file_bytes)))
    if name == "pre-push":
        return header + funcs + _PRE_PUSH_BODY
    if name == "pre-rebase":
        return header + funcs + _PRE_REBASE_BODY
    raise ValueError(f"Unknown hook: {name}")


def find_repo_root(start: Path) -> Optional[Path]:
    """Walk up from `start` to the first directory containing `.git`."""
    current = Path(os.path.abspath(start))
    for candidate in (current, *current.parents):
        if os.path.lexists(candidate / ".git"):
            return candidate
    return None


def git_dir_for(repo_root: Path) -> Optional[Path]:
    """
    Resolve the git directory holding hooks.

    `.git` may be a file (`gitdir: ...`) for worktrees and submodules; worktree
    gitdirs point at the shared directory through a `commondir` file.
    """
    dot_git = Path(repo_root) / ".git"
    if dot_git.is_dir():
        return dot_git
    if not dot_git.is_file():
        return None
    try:
        content = dot_git.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    if not content.startswith("gitdir:"):
        return None
    git_dir = Path(content[len("gitdir:"):].strip())
    if not git_dir.is_absolute():
        git_dir = Path(repo_root) / git_dir
    common = git_dir / "commondir"
    if common.is_file():
        try:
            rel = common.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            rel = ""
        if rel:
            common_dir = Path(rel)
            git_dir = common_dir if common_dir.is_absolute() else git_dir / common_dir
    return Path(os.path.normpath(str(git_dir)))


def hooks_dir_for(project_dir: Path) -> Optional[Path]:
    """Hook directory of the repository containing `project_dir`, if any."""
    root = find_repo_root(project_dir)
    if root is None:
        return None
    git_dir = git_dir_for(root)
    if git_dir is None:
        return None
    return git_dir / "hooks"


def _is_managed(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            head = f.read(4096)
    except OSError:
        return False
    return HOOK_MARKER.encode() in head


def scan_hooks(hooks_dir: Path, names: Sequence[str] = HOOK_NAMES) -> List[HookRecord]:
    records = []
    for name in names:
        path = Path(hooks_dir) / name
        if not os.path.lexists(path):
            records.append(HookRecord(name=name, path=path, installed=False, foreign=False))
            continue
        managed = _is_managed(path)
        records.append(HookRecord(name=name, path=path, installed=True, foreign=not managed))
    return records


def _create_exclusive(path: Path, content: str) -> bool:
    """
    Create `path` with `content` only if it does not exist yet.

    Returns False when another writer got there first.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_name, 0o755)
        try:
            os.link(tmp_name, path)
        except FileExistsError:
            return False
        except OSError:
            # Filesystem without hard links
            try:
                out = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o755)
            except FileExistsError:
                return False
            with os.fdopen(out, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(path, 0o755)
        return True
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)


def install_hooks(
    hooks_dir: Path,
    protected_branches: Sequence[str] = DEFAULT_PROTECTED_BRANCHES,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
) -> HookReport:
    """
    Install every missing hook into `hooks_dir`; never touch existing ones.

    Running it twice in a row changes nothing the second time.
    """
    hooks_dir = Path(hooks_dir)
    report = HookReport(hooks_dir=hooks_dir)
    hooks_dir.mkdir(parents=True, exist_ok=True)

    for record in scan_hooks(hooks_dir):
        if record.foreign:
            report.foreign.append(record.name)
            report.warnings.append(HookInstallWarning(
                f"Existing {record.name} hook at {record.path} was not written by bubblm; leaving it untouched"
            ))
            continue
        if record.installed:
            report.unchanged.append(record.name)
            continue
        content = render_hook(record.name, protected_branches, max_file_bytes)
        if _create_exclusive(record.path, content):
            report.installed.append(record.name)
            logger.info("Installed %s hook: %s", record.name, record.path)
        elif _is_managed(record.path):
            report.unchanged.append(record.name)
        else:
            report.foreign.append(record.name)
            report.warnings.append(HookInstallWarning(
                f"{record.name} hook appeared at {record.path} during installation; leaving it untouched"
            ))

    for warning in report.warnings:
        logger.warning("%s", warning)
    return report


def guard_repository(
    project_dir: Path,
    protected_branches: Sequence[str] = DEFAULT_PROTECTED_BRANCHES,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
) -> Optional[HookReport]:
    """
    Run the hook guard for the repository containing `project_dir`.

    Returns None when the project is not inside a git repository. I/O errors
    are logged and reported as a warning; they never block the launch.
    """
    hooks_dir = hooks_dir_for(project_dir)
    if hooks_dir is None:
        logger.debug("No git repository at or above %s; hook guard inactive", project_dir)
        return None
    try:
        return install_hooks(hooks_dir, protected_branches, max_file_bytes)
    except OSError as e:
        warning = HookInstallWarning(f"Could not install git hooks in {hooks_dir}: {e}")
        logger.warning("%s", warning)
        return HookReport(hooks_dir=hooks_dir, warnings=[warning])
