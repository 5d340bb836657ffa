"""
BubbLM - bubblewrap sandbox runner
Runs a command (default: Claude Code) with the filesystem read-only except
for the project directory and explicitly granted paths and databases.
"""
from __future__ import annotations

import logging
import os
import shlex
import sys
from pathlib import Path

from dotenv import load_dotenv

from core.compiler import PolicyCompiler, PolicySettings
from core.config import ConfigError, load_config, save_default_command
from core.hooks import guard_repository, hooks_dir_for
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
from core.observability import SessionContext, configure_logging, log_audit_event
from core.options import SandboxOptions, UsageError, build_parser, parse_options
from core.policy import PolicyOrderError

logger = logging.getLogger("bubblm")

# Lives in the (read-only inside the sandbox) home root, never in the project
DOTENV_FILE = ".bubblm.env"


def run(options: SandboxOptions, project_dir: Path) -> int:
    """
    Preflight, compile, guard hooks, launch.

    Returns only on dry runs; a real launch replaces this process.
    """
    config = load_config()
    command = list(options.command or config["default_command"])

    # Preflight: nothing below runs unless backend and command resolve
    backend = resolve_backend(options.backend or config["backend"])
    resolve_command(command, os.environ.get("PATH"))

    if options.save_default:
        if options.dry_run:
            logger.info("Dry run: default command not saved")
        else:
            path = save_default_command(options.command)
            logger.info("Saved default command to %s: %s", path, shlex.join(options.command))

    home = Path.home()
    hooks_dir = hooks_dir_for(project_dir)
    compiler = PolicyCompiler(
        home,
        baseline=backend.spec.baseline,
        settings=PolicySettings.from_config(config),
        create_missing=not options.dry_run,
        redirect_home=backend.spec.supports_redirect,
    )
    plan = compiler.compile(
        project_dir,
        writable_paths=options.writable_paths,
        writable_dbs=options.writable_dbs,
        hooks_dir=hooks_dir,
    )

    if options.dry_run:
        logger.debug("Dry run: hook guard skipped")
    elif config["install_hooks"] and not options.no_hooks:
        guard_repository(
            project_dir,
            protected_branches=config["protected_branches"],
            max_file_bytes=int(config["max_commit_file_mb"] * 1024 * 1024),
        )
    if hooks_dir is not None and not options.dry_run:
        # The read-only bind needs an existing source
        hooks_dir.mkdir(parents=True, exist_ok=True)

    env = build_environment(
        os.environ,
        resolved_dbs=plan.resolved_dbs,
        writable_paths=plan.writable_paths,
        extra_names=config["extra_env"],
        baseline=plan.policy.baseline.value,
    )
    session = SandboxSession(
        backend=backend,
        plan=plan,
        workdir=str(project_dir),
        command=command,
        env=env,
        unshare=config["unshare_namespaces"],
    )

    logger.info("Sandbox configuration:")
    for line in describe_session(session):
        logger.info("  - %s", line)
    for line in plan.policy.describe():
        logger.debug("  %s", line)
    logger.warning("Directory '%s' is fully writable", project_dir)

    argv = launch(session, dry_run=options.dry_run)
    print(shlex.join(argv))
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv(Path.home() / DOTENV_FILE)
    argv = sys.argv[1:] if argv is None else argv

    try:
        options = parse_options(argv)
    except UsageError as e:
        print(build_parser().format_usage().rstrip(), file=sys.stderr)
        print(f"bubblm: error: {e}", file=sys.stderr)
        return 1

    configure_logging(options.verbose)
    project_dir = Path(os.path.abspath(os.getcwd()))

    with SessionContext():
        try:
            return run(options, project_dir)
        except ConfigError as e:
            logger.error("Invalid config %s:", e.path)
            for err in e.errors:
                logger.error("  %s", err)
            return 1
        except (PreflightError, PolicyOrderError, LaunchFailure) as e:
            logger.error("%s", e)
            log_audit_event("sandbox_launch", "error", metadata={"error": str(e), "type": type(e).__name__})
            return 1


if __name__ == "__main__":
    sys.exit(main())
