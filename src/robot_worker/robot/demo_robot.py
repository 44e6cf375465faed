"""Local stand-in for the robot CLI used by integration tests.

Accepts ``execute [--file PATH | --process NAME] --input JSON`` like the real
robot. Behaviour is steered by reserved input variables:

- ``demo_sleep``: seconds to sleep before answering
- ``demo_exit``: exit code to return
- ``demo_stdout`` / ``demo_stderr``: raw text written to the streams
- ``demo_flood``: bytes written to stdout before exiting

Without ``demo_stdout`` the remaining input variables are echoed back as JSON.
"""

from __future__ import annotations

import argparse
import json
import sys
import time

from robot_worker.robot.marshaller import from_process_output

_RESERVED_PREFIX = "demo_"


def main(argv: list[str] | None = None) -> int:
    """Run deterministic robot behaviour."""

    parser = argparse.ArgumentParser(prog="demo-robot")
    subcommands = parser.add_subparsers(dest="command", required=True)
    execute = subcommands.add_parser("execute")
    target = execute.add_mutually_exclusive_group()
    target.add_argument("--file")
    target.add_argument("--process")
    execute.add_argument("--input", default="{}")
    args = parser.parse_args(argv)

    variables = from_process_output(args.input)

    sleep_seconds = float(variables.get("demo_sleep", 0) or 0)
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    flood = int(variables.get("demo_flood", 0) or 0)
    if flood > 0:
        sys.stdout.write("x" * flood)
        sys.stdout.flush()

    if "demo_stderr" in variables:
        sys.stderr.write(str(variables["demo_stderr"]))
        sys.stderr.flush()

    if "demo_stdout" in variables:
        sys.stdout.write(str(variables["demo_stdout"]))
    elif flood <= 0:
        echoed = {
            name: value
            for name, value in variables.items()
            if not name.startswith(_RESERVED_PREFIX)
        }
        if args.process:
            echoed["process"] = args.process
        sys.stdout.write(json.dumps(echoed))
    sys.stdout.flush()

    return int(variables.get("demo_exit", 0) or 0)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
