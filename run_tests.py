#!/usr/bin/env python
"""Test runner script for ups-bridge.

This script provides a convenient way to run tests with different options.
"""
from __future__ import annotations

import argparse
import subprocess
import sys


def main():
    parser = argparse.ArgumentParser(description="Run ups-bridge tests")
    parser.add_argument(
        "--integration",
        action="store_true",
        help="Run only integration tests (threads and real timers)",
    )
    parser.add_argument(
        "--database",
        action="store_true",
        help="Run only the store tests (SQLite stand-in for PostgreSQL)",
    )
    parser.add_argument(
        "--unit",
        action="store_true",
        help="Skip integration tests",
    )
    parser.add_argument(
        "-k",
        dest="keyword",
        help="Only run tests matching the given pytest keyword expression",
    )
    parser.add_argument(
        "--coverage",
        action="store_true",
        help="Run with coverage report",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Verbose output",
    )
    parser.add_argument(
        "--file",
        help="Run specific test file",
    )
    parser.add_argument(
        "--install",
        action="store_true",
        help="Install test dependencies first",
    )

    args = parser.parse_args()

    if args.install:
        print("Installing test dependencies...")
        result = subprocess.run(
            [sys.executable, "-m", "pip", "install", "-e", ".[test]"],
            check=False,
        )
        if result.returncode != 0:
            print("Failed to install dependencies")
            return 1
        print()

    cmd = [sys.executable, "-m", "pytest"]

    if args.verbose:
        cmd.append("-v")

    if args.integration:
        cmd.extend(["-m", "integration"])
    elif args.database:
        cmd.extend(["-m", "database"])
    elif args.unit:
        cmd.extend(["-m", "not integration"])

    if args.keyword:
        cmd.extend(["-k", args.keyword])

    if args.coverage:
        cmd.extend(["--cov=ups_bridge", "--cov-report=term-missing"])

    if args.file:
        cmd.append(args.file)
    else:
        cmd.append("tests")

    print(f"Running: {' '.join(cmd)}")
    print()
    result = subprocess.run(cmd, check=False)
    return result.returncode


if __name__ == "__main__":
    sys.exit(main())
