"""
Command-line option normalizer for BubbLM.

    bubblm [-w PATH]... [-d NAME]... [options] [COMMAND [ARGS...]]

`-w` and `-d` may be repeated and each occurrence may carry a colon-joined
list. All occurrences merge into one ordered list (first seen, first
applied). The first token that is not an option starts the target command;
nothing after it is interpreted here.

Parsing is pure: no filesystem access, no mutation.
"""
from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

BACKEND_CHOICES = ("auto", "bwrap", "firejail")


class UsageError(Exception):
    """Raised for malformed command lines (exit status 1)."""


class _OptionParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise UsageError(message)


@dataclass
class SandboxOptions:
    writable_paths: List[Path] = field(default_factory=list)
    writable_dbs: List[str] = field(default_factory=list)
    command: List[str] = field(default_factory=list)
    backend: Optional[str] = None
    dry_run: bool = False
    save_default: bool = False
    no_hooks: bool = False
    verbose: bool = False


def build_parser() -> argparse.ArgumentParser:
    parser = _OptionParser(
        prog="bubblm",
        description="Run a command in a bubblewrap/firejail sandbox with a default-deny write policy",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-w",
        "--write",
        action="append",
        default=[],
        metavar="PATH[:PATH...]",
        help="Grant write access to PATH (repeatable, colon-separated lists allowed)",
    )
    parser.add_argument(
        "-d",
        "--writable-db",
        action="append",
        default=[],
        metavar="NAME[:NAME...]",
        help="Grant write access to a database (mysql, postgres, redis, sqlite:<path>)",
    )
    parser.add_argument(
        "--backend",
        choices=BACKEND_CHOICES,
        default=None,
        help="Isolation backend (default: probe for bwrap, then firejail)",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Print the sandbox invocation instead of running it; creates no files",
    )
    parser.add_argument(
        "--save-default",
        action="store_true",
        help="Store COMMAND as the default command in the config file",
    )
    parser.add_argument(
        "--no-hooks",
        action="store_true",
        help="Do not install protective git hooks for this run",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Debug logging, including the full mount plan",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command and arguments to run inside the sandbox",
    )
    return parser


def split_values(occurrences: Iterable[str]) -> List[str]:
    """Flatten repeated / colon-joined values into one ordered, de-duplicated list."""
    merged: List[str] = []
    for occurrence in occurrences:
        for part in occurrence.split(":"):
            part = part.strip()
            if part and part not in merged:
                merged.append(part)
    return merged


def split_database_values(occurrences: Iterable[str]) -> List[str]:
    """
    Like split_values, but `sqlite:<path>` stays one token.

    `-d mysql:sqlite:/srv/app.db:postgres` -> ["mysql", "sqlite:/srv/app.db", "postgres"]
    """
    merged: List[str] = []
    for occurrence in occurrences:
        parts = occurrence.split(":")
        idx = 0
        while idx < len(parts):
            token = parts[idx].strip()
            idx += 1
            if token.lower() == "sqlite":
                if idx >= len(parts) or not parts[idx].strip():
                    raise UsageError("sqlite database requires a path: -d sqlite:<path>")
                token = f"sqlite:{parts[idx].strip()}"
                idx += 1
            if token and token not in merged:
                merged.append(token)
    return merged


def absolutize(value: str, cwd: Path) -> Path:
    expanded = os.path.expanduser(value)
    if not os.path.isabs(expanded):
        expanded = os.path.join(str(cwd), expanded)
    return Path(os.path.normpath(expanded))


def parse_options(argv: Sequence[str], cwd: Optional[Path] = None) -> SandboxOptions:
    """
    Parse the BubbLM command line.

    Raises:
        UsageError: unknown flag, flag missing its value, or --save-default
            without a command.
    """
    args = build_parser().parse_args(list(argv))
    base = Path(cwd) if cwd is not None else Path(os.getcwd())

    command = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]

    paths: List[Path] = []
    for value in split_values(args.write):
        path = absolutize(value, base)
        if path not in paths:
            paths.append(path)

    options = SandboxOptions(
        writable_paths=paths,
        writable_dbs=split_database_values(args.writable_db),
        command=command,
        backend=args.backend,
        dry_run=args.dry_run,
        save_default=args.save_default,
        no_hooks=args.no_hooks,
        verbose=args.verbose,
    )
    if options.save_default and not options.command:
        raise UsageError("--save-default requires a COMMAND to store")
    return options
