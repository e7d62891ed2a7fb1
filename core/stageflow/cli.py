"""
Command-line interface for Stageflow.

Usage:
    stageflow validate workflows/short-video.json
    stageflow plan workflows/short-video.json --json
    stageflow run workflows/short-video.json --backend-url http://localhost:3001
    stageflow run workflows/short-video.json --dry-run --pacing-ms 0
"""

import argparse
import sys


def main():
    parser = argparse.ArgumentParser(
        prog="stageflow",
        description="Stageflow - plan and run media workflow graphs",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    from stageflow.runner.cli import register_commands

    register_commands(subparsers)

    args = parser.parse_args()

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
