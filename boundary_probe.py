"""
Sandbox boundary test for BubbLM.
Run this inside a sandbox session to check the compiled policy for real:

    bubblm python3 boundary_probe.py --report boundary-report.json

Every probe is compared against the expectation table for the session's
baseline. Exit status is 0 only when every probe matches or is skipped
(the hook directory probe needs the project to be inside a git repository).
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from core.hooks import hooks_dir_for
from core.oracle import ProbeContext, Status, run_catalog, summarize, write_report
from core.policy import Baseline


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Probe the sandbox boundary from inside a BubbLM session")
    parser.add_argument(
        "--project",
        type=str,
        default=os.getcwd(),
        help="Project directory of the session (default: current directory)",
    )
    parser.add_argument(
        "--baseline",
        choices=[b.value for b in Baseline],
        default=os.getenv("BUBBLM_BASELINE") or Baseline.DEFAULT_DENY.value,
        help="Baseline the session was launched with (default: $BUBBLM_BASELINE)",
    )
    parser.add_argument("--report", type=str, help="Write a JSON report to this path")
    args = parser.parse_args(argv)

    if os.getenv("BUBBLM_SANDBOX") != "1":
        print("WARNING: not running inside a bubblm session; results describe the host", file=sys.stderr)

    baseline = Baseline(args.baseline)
    project = Path(args.project).resolve()
    hooks_dir = hooks_dir_for(project)
    context = ProbeContext(
        project_dir=str(project),
        home=str(Path.home()),
        hooks_dir=str(hooks_dir) if hooks_dir is not None else None,
    )

    print("===================================")
    print("BubbLM Sandbox Boundary Test")
    print("===================================")
    print(f"Project:  {context.project_dir}")
    print(f"Hooks:    {context.hooks_dir or '(no git repository)'}")
    print(f"Baseline: {baseline.value}")
    print("")

    results = run_catalog(context, baseline)
    for r in results:
        if r.status is Status.SKIPPED:
            print(f"[{r.status.value}] {r.probe}: {r.detail}")
            continue
        line = f"[{r.status.value}] {r.probe}: expected {r.expected.value}, observed {r.observed.value}"
        if r.failure_kind:
            line += f" ({r.failure_kind})"
        print(line)
        if r.status is Status.FAILURE:
            print(f"    target: {r.target}")
            print(f"    detail: {r.detail}")

    summary = summarize(results)
    print("")
    print(f"Passed: {summary['passed']}/{summary['total']}")
    if summary["skipped"]:
        print(f"Skipped: {summary['skipped']}")
    print(f"Security leaks: {summary['security_leaks']}")
    print(f"Over-restrictions: {summary['over_restrictions']}")

    if args.report:
        path = write_report(Path(args.report), results, baseline)
        print(f"Report saved to: {path}")

    return 0 if summary["passed"] + summary["skipped"] == summary["total"] else 1


if __name__ == "__main__":
    sys.exit(main())
