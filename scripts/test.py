#!/usr/bin/env python3
"""Test runner for Metronome.

Wraps pytest and the code quality tools so CI and developers run the
same commands.
"""

import argparse
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Tuple

PROJECT_ROOT = Path(__file__).resolve().parent.parent
PACKAGE = "src/metronome"


def run_command(cmd: List[str], *, cwd: Optional[Path] = PROJECT_ROOT) -> int:
    """Run a command from the project root and return its exit code."""
    print(f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd, cwd=cwd).returncode


def build_pytest_command(
    marker: str = "all",
    *,
    keyword: Optional[str] = None,
    coverage: bool = False,
    html_report: bool = False,
    min_coverage: int = 90,
    verbose: bool = False,
    fail_fast: bool = False,
) -> List[str]:
    """Assemble the pytest command line.

    Args:
        marker: Marker expression to select (unit, integration, database) or all
        keyword: Optional ``-k`` expression
        coverage: Enable coverage reporting for the metronome package
        html_report: Also write an HTML coverage report
        min_coverage: Fail under this coverage percentage
        verbose: Verbose test output
        fail_fast: Stop on first failure
    """
    cmd = [sys.executable, "-m", "pytest"]

    if marker != "all":
        cmd.extend(["-m", marker])
    elif "database" not in (keyword or ""):
        # Live SQL Server tests only run when asked for
        cmd.extend(["-m", "not database"])

    if keyword:
        cmd.extend(["-k", keyword])

    if coverage:
        cmd.extend([
            f"--cov={PACKAGE}",
            "--cov-report=term-missing:skip-covered",
            "--cov-report=xml:coverage.xml",
            f"--cov-fail-under={min_coverage}",
        ])
        if html_report:
            cmd.append("--cov-report=html:htmlcov")

    if verbose:
        cmd.append("-v")
    if fail_fast:
        cmd.append("-x")

    cmd.append("--durations=10")
    return cmd


QUALITY_CHECKS: List[Tuple[List[str], str]] = [
    (["black", "--check", "src", "tests"], "Code formatting (black)"),
    (["isort", "--check-only", "src", "tests"], "Import sorting (isort)"),
    (["flake8", "src", "tests"], "Code linting (flake8)"),
    (["mypy", PACKAGE], "Type checking (mypy)"),
]


def run_quality_checks() -> int:
    """Run every quality check and report the failing ones."""
    failed = []
    for cmd, description in QUALITY_CHECKS:
        print(f"\n{'=' * 60}\nRunning {description}\n{'=' * 60}")
        if run_command(cmd) != 0:
            failed.append(description)

    print(f"\n{'=' * 60}")
    if failed:
        print("Quality checks failed:")
        for description in failed:
            print(f"  - {description}")
        return 1
    print("All quality checks passed")
    return 0


def run_format() -> int:
    for cmd in (["black", "src", "tests"], ["isort", "src", "tests"]):
        exit_code = run_command(cmd)
        if exit_code != 0:
            return exit_code
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Metronome test runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Unit and integration tests, no live SQL Server
  %(prog)s --type unit              # Unit tests only
  %(prog)s --type database          # Tests against a live SQL Server
  %(prog)s -k scheduler -v          # Tests matching a keyword
  %(prog)s --coverage --html        # Coverage with HTML report
  %(prog)s --quality                # black, isort, flake8 and mypy
        """,
    )
    parser.add_argument(
        "--type", "-t",
        choices=["all", "unit", "integration", "database"],
        default="all",
        help="Marker of the tests to run (default: all except database)",
    )
    parser.add_argument("--keyword", "-k", help="Only run tests matching this expression")
    parser.add_argument("--coverage", "-c", action="store_true", help="Enable coverage reporting")
    parser.add_argument("--html", action="store_true", help="Generate HTML coverage report")
    parser.add_argument("--min-coverage", type=int, default=90, help="Coverage threshold")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--fail-fast", "-x", action="store_true", help="Stop on first failure")
    parser.add_argument("--quality", "-q", action="store_true", help="Run code quality checks")
    parser.add_argument("--format", "-f", action="store_true", help="Format code with black and isort")
    parser.add_argument(
        "--full",
        action="store_true",
        help="Quality checks followed by the test suite with coverage",
    )
    args = parser.parse_args()

    if args.format:
        return run_format()
    if args.quality:
        return run_quality_checks()

    if args.full:
        exit_code = run_quality_checks()
        if exit_code != 0:
            return exit_code
        return run_command(
            build_pytest_command(coverage=True, html_report=True, min_coverage=args.min_coverage)
        )

    return run_command(
        build_pytest_command(
            args.type,
            keyword=args.keyword,
            coverage=args.coverage,
            html_report=args.html,
            min_coverage=args.min_coverage,
            verbose=args.verbose,
            fail_fast=args.fail_fast,
        )
    )


if __name__ == "__main__":
    sys.exit(main())
