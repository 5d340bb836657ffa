"""
Database identifier resolution.

`-d NAME` grants the sandbox write access to the local sockets / data
directories of a database server. Each kind has a small ordered list of
candidate paths; only candidates that exist on the host are used.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple


# Ordered candidates per database kind (sockets first, then data dirs)
DATABASE_CANDIDATES: Dict[str, Tuple[str, ...]] = {
    "mysql": (
        "/var/run/mysqld",
        "/run/mysqld",
        "/var/lib/mysql",
    ),
    "postgres": (
        "/var/run/postgresql",
        "/run/postgresql",
        "/var/lib/postgresql",
    ),
    "redis": (
        "/var/run/redis",
        "/run/redis",
        "/var/lib/redis",
    ),
}

DATABASE_ALIASES: Dict[str, str] = {
    "mariadb": "mysql",
    "postgresql": "postgres",
    "pg": "postgres",
}

SQLITE_PREFIX = "sqlite:"


@dataclass
class DatabaseResolution:
    identifier: str
    kind: Optional[str]
    paths: List[str] = field(default_factory=list)
    problem: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return bool(self.paths) and self.problem is None


def canonical_kind(identifier: str) -> str:
    key = identifier.strip().lower()
    return DATABASE_ALIASES.get(key, key)


def resolve_database(
    identifier: str,
    candidates: Optional[Dict[str, Tuple[str, ...]]] = None,
    exists: Callable[[str], bool] = os.path.exists,
    cwd: Optional[Path] = None,
) -> DatabaseResolution:
    """
    Resolve one database identifier to the host paths that must be writable.

    `sqlite:<path>` resolves to the directory holding the database file,
    since SQLite writes its journal / WAL files next to it.
    """
    table = DATABASE_CANDIDATES if candidates is None else candidates
    ident = identifier.strip()

    if ident.lower().startswith(SQLITE_PREFIX):
        raw = ident[len(SQLITE_PREFIX):]
        if not raw:
            return DatabaseResolution(ident, "sqlite", problem="sqlite identifier has no path")
        db_path = Path(raw).expanduser()
        if not db_path.is_absolute():
            db_path = Path(cwd or os.getcwd()) / db_path
        parent = os.path.normpath(str(db_path.parent))
        if not exists(parent):
            return DatabaseResolution(
                ident, "sqlite", problem=f"directory {parent} does not exist"
            )
        return DatabaseResolution(ident, "sqlite", paths=[parent])

    kind = canonical_kind(ident)
    if kind not in table:
        known = ", ".join(sorted(set(table) | set(DATABASE_ALIASES) | {"sqlite:<path>"}))
        return DatabaseResolution(
            ident, None, problem=f"unknown database '{ident}' (known: {known})"
        )

    found = [p for p in table[kind] if exists(p)]
    if not found:
        return DatabaseResolution(
            ident, kind, problem=f"no socket or data directory found for '{ident}'"
        )
    return DatabaseResolution(ident, kind, paths=found)
