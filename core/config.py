"""
Configuration loader for BubbLM.
Loads user settings from ~/.bubblm.yml (or $BUBBLM_CONFIG).

The config file lives directly in the home directory, which is mounted
read-only inside the sandbox, so a sandboxed process cannot widen its own
policy for the next run.

Read contract: load_config() never writes; missing file means defaults.
Write contract: save_default_command() is the only writer and replaces the
`default_command` key only, atomically.
"""
from __future__ import annotations

import os
import shlex
import tempfile
from pathlib import Path
from typing import Any, Optional

import yaml
from yaml.nodes import MappingNode, SequenceNode


class ConfigError(Exception):
    """Raised when the config file fails schema validation."""

    def __init__(self, path: Path, errors: list[str]) -> None:
        self.path = path
        self.errors = errors
        super().__init__("; ".join(errors))


CONFIG_FILE_NAME = ".bubblm.yml"

# Default configuration values
DEFAULT_COMMAND: list[str] = ["claude", "--dangerously-skip-permissions"]
DEFAULT_BACKEND = "auto"
DEFAULT_UNSHARE_NAMESPACES = False
DEFAULT_INSTALL_HOOKS = True
DEFAULT_PROTECTED_BRANCHES: list[str] = ["main", "master"]
DEFAULT_MAX_COMMIT_FILE_MB = 50
DEFAULT_EXTRA_ENV: list[str] = []

_VALID_BACKENDS = {"auto", "bwrap", "firejail"}

_ALLOWED_TOP_LEVEL_KEYS = {
    "default_command",
    "backend",
    "unshare_namespaces",
    "install_hooks",
    "protected_branches",
    "max_commit_file_mb",
    "system_roots",
    "scratch_paths",
    "cache_paths",
    "app_config_paths",
    "private_root",
    "extra_env",
}
_STRING_LIST_KEYS = (
    "protected_branches",
    "system_roots",
    "scratch_paths",
    "cache_paths",
    "app_config_paths",
    "extra_env",
)
_ABSOLUTE_PATH_KEYS = ("system_roots", "scratch_paths")


def default_config_path() -> Path:
    env_path = os.getenv("BUBBLM_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / CONFIG_FILE_NAME


def default_config() -> dict[str, Any]:
    return {
        "default_command": list(DEFAULT_COMMAND),
        "backend": DEFAULT_BACKEND,
        "unshare_namespaces": DEFAULT_UNSHARE_NAMESPACES,
        "install_hooks": DEFAULT_INSTALL_HOOKS,
        "protected_branches": list(DEFAULT_PROTECTED_BRANCHES),
        "max_commit_file_mb": DEFAULT_MAX_COMMIT_FILE_MB,
        "system_roots": None,
        "scratch_paths": None,
        "cache_paths": [],
        "app_config_paths": None,
        "private_root": None,
        "extra_env": list(DEFAULT_EXTRA_ENV),
    }


def _collect_line_map(node, prefix: str, line_map: dict[str, int]) -> None:
    if isinstance(node, MappingNode):
        for key_node, value_node in node.value:
            key = str(key_node.value)
            path = f"{prefix}.{key}" if prefix else key
            line_map[path] = int(key_node.start_mark.line) + 1
            _collect_line_map(value_node, path, line_map)
    elif isinstance(node, SequenceNode):
        for idx, item in enumerate(node.value):
            path = f"{prefix}[{idx}]" if prefix else f"[{idx}]"
            line_map[path] = int(item.start_mark.line) + 1
            _collect_line_map(item, path, line_map)


def _get_line(line_map: dict[str, int], path: str) -> str:
    line = line_map.get(path)
    return f"line {line}" if line else "line ?"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _add_error(errors: list[str], line_map: dict[str, int], path: str, message: str) -> None:
    errors.append(f"{_get_line(line_map, path)} ({path}): {message}")


def _validate_config_data(data: Any, line_map: dict[str, int]) -> list[str]:
    errors: list[str] = []
    if data is None:
        return errors
    if not isinstance(data, dict):
        errors.append("line ? (root): Config must be a mapping (key/value pairs).")
        return errors

    for key in data.keys():
        if key not in _ALLOWED_TOP_LEVEL_KEYS:
            _add_error(
                errors,
                line_map,
                str(key),
                "Unknown field. Allowed: " + ", ".join(sorted(_ALLOWED_TOP_LEVEL_KEYS)),
            )

    if "default_command" in data:
        cmd = data["default_command"]
        if isinstance(cmd, str):
            if not cmd.strip():
                _add_error(errors, line_map, "default_command", "Must not be empty.")
        elif isinstance(cmd, list):
            if not cmd:
                _add_error(errors, line_map, "default_command", "Must not be empty.")
            for idx, item in enumerate(cmd):
                if not isinstance(item, str):
                    _add_error(errors, line_map, f"default_command[{idx}]", "Expected a string.")
        else:
            _add_error(errors, line_map, "default_command", "Expected a string or a list of strings.")

    if "backend" in data and str(data["backend"]).lower() not in _VALID_BACKENDS:
        _add_error(errors, line_map, "backend", "Expected one of auto, bwrap, firejail.")

    for key in ("unshare_namespaces", "install_hooks"):
        if key in data and not isinstance(data[key], bool):
            _add_error(errors, line_map, key, "Expected true/false.")

    if "max_commit_file_mb" in data:
        val = data["max_commit_file_mb"]
        if not _is_number(val):
            _add_error(errors, line_map, "max_commit_file_mb", "Expected a positive number.")
        elif val <= 0:
            _add_error(errors, line_map, "max_commit_file_mb", "Must be > 0.")

    if data.get("private_root") is not None:
        root = data["private_root"]
        if not isinstance(root, str) or not root.strip():
            _add_error(errors, line_map, "private_root", "Expected a non-empty string.")
        elif root.startswith("/") or ".." in Path(root).parts:
            _add_error(errors, line_map, "private_root", "Expected a path relative to $HOME.")

    for key in _STRING_LIST_KEYS:
        if key not in data or data[key] is None:
            continue
        if not isinstance(data[key], list):
            _add_error(errors, line_map, key, "Expected a list of strings.")
            continue
        for idx, item in enumerate(data[key]):
            if not isinstance(item, str):
                _add_error(errors, line_map, f"{key}[{idx}]", "Expected a string.")
            elif key in _ABSOLUTE_PATH_KEYS and not item.startswith("/"):
                _add_error(errors, line_map, f"{key}[{idx}]", "Expected an absolute path.")
            elif key == "cache_paths" and item.startswith("/"):
                _add_error(errors, line_map, f"{key}[{idx}]", "Expected a path relative to $HOME.")

    return errors


def _load_yaml_with_lines(raw: str) -> tuple[dict[str, Any], dict[str, int]]:
    line_map: dict[str, int] = {}
    if not raw.strip():
        return {}, line_map
    node = yaml.compose(raw)
    if node is not None:
        _collect_line_map(node, "", line_map)
    data = yaml.safe_load(raw) or {}
    return data, line_map


def _parse_command(value: Any) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


def load_config(config_path: Optional[Path] = None) -> dict[str, Any]:
    """
    Load BubbLM configuration.

    Environment variables override config file values:
    - BUBBLM_BACKEND
    - BUBBLM_INSTALL_HOOKS
    - BUBBLM_UNSHARE_NAMESPACES
    - BUBBLM_DEFAULT_COMMAND

    Returns:
        Config dict; list-valued settings left as None fall back to the
        compiler's built-in tables.
    """
    config = default_config()
    config_path = Path(config_path) if config_path is not None else default_config_path()

    if config_path.exists():
        try:
            raw = config_path.read_text(encoding="utf-8", errors="replace")
            data, line_map = _load_yaml_with_lines(raw)
            errors = _validate_config_data(data, line_map)
            if errors:
                raise ConfigError(config_path, errors)
            if isinstance(data, dict):
                if "default_command" in data:
                    config["default_command"] = _parse_command(data["default_command"])
                if "backend" in data:
                    config["backend"] = str(data["backend"]).lower()
                if "unshare_namespaces" in data:
                    config["unshare_namespaces"] = bool(data["unshare_namespaces"])
                if "install_hooks" in data:
                    config["install_hooks"] = bool(data["install_hooks"])
                if "max_commit_file_mb" in data:
                    config["max_commit_file_mb"] = data["max_commit_file_mb"]
                if data.get("private_root"):
                    config["private_root"] = str(data["private_root"]).strip().rstrip("/")
                for key in _STRING_LIST_KEYS:
                    if key in data and data[key] is not None:
                        config[key] = [str(item).strip() for item in data[key] if str(item).strip()]
        except yaml.YAMLError as e:
            problem = getattr(e, "problem", "Invalid YAML")
            mark = getattr(e, "problem_mark", None)
            if mark is not None:
                msg = f"{problem} at line {mark.line + 1}, column {mark.column + 1}."
            else:
                msg = str(problem)
            raise ConfigError(config_path, [msg]) from e
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(config_path, [f"Failed to read config: {e}"])

    # Environment overrides
    env_backend = os.getenv("BUBBLM_BACKEND")
    if env_backend:
        backend = env_backend.strip().lower()
        if backend not in _VALID_BACKENDS:
            raise ConfigError(config_path, [f"BUBBLM_BACKEND: unknown backend '{env_backend}'"])
        config["backend"] = backend

    for env_name, key in (
        ("BUBBLM_INSTALL_HOOKS", "install_hooks"),
        ("BUBBLM_UNSHARE_NAMESPACES", "unshare_namespaces"),
    ):
        env_val = os.getenv(env_name, "").lower()
        if env_val in ("1", "true", "yes"):
            config[key] = True
        elif env_val in ("0", "false", "no"):
            config[key] = False

    env_cmd = os.getenv("BUBBLM_DEFAULT_COMMAND")
    if env_cmd and env_cmd.strip():
        config["default_command"] = shlex.split(env_cmd)

    return config


def save_default_command(command: list[str], config_path: Optional[Path] = None) -> Path:
    """
    Persist `command` as the default command.

    Other keys in an existing config file are kept as they are. The file is
    replaced atomically so a concurrent reader sees either version.
    """
    if not command:
        raise ValueError("Refusing to save an empty default command")
    config_path = Path(config_path) if config_path is not None else default_config_path()

    data: dict[str, Any] = {}
    if config_path.exists():
        raw = config_path.read_text(encoding="utf-8", errors="replace")
        try:
            data, line_map = _load_yaml_with_lines(raw)
        except yaml.YAMLError as e:
            raise ConfigError(config_path, [f"Cannot update invalid YAML: {e}"]) from e
        errors = _validate_config_data(data, line_map)
        if errors:
            raise ConfigError(config_path, errors)
    data = dict(data or {})
    data["default_command"] = list(command)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".bubblm-", suffix=".yml", dir=str(config_path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write("# BubbLM configuration\n")
            f.write(yaml.safe_dump(data, sort_keys=False))
        os.replace(tmp_name, config_path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return config_path
