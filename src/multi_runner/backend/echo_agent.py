"""Local stand-in for the assistant CLI, used by integration tests.

Behavior is driven by markers inside the prompt:

- ``touch:<path>`` creates ``<path>`` (relative to the working directory);
- ``fail-now`` exits with code 3;
- ``sleep:<seconds>`` sleeps before answering.

With ``--read-stdin`` it drafts a context file from the reference text on
stdin and prints a progress note on stderr.

Every call is appended to ``agent_calls.log`` in the working directory. When
``MULTI_RUNNER_ECHO_RATE_LIMITS`` names a file holding an integer, that many
calls answer with a usage-limit message before the agent starts working.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
import time
from pathlib import Path

_TOUCH = re.compile(r"touch:(\S+)")
_SLEEP = re.compile(r"sleep:([0-9.]+)")


def main(argv: list[str] | None = None) -> int:
    """Answer one prompt deterministically."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--allowed-tools", default="")
    parser.add_argument("-p", "--prompt", required=True)
    parser.add_argument("--read-stdin", action="store_true")
    args = parser.parse_args(argv)

    prompt: str = args.prompt
    if _consume_rate_limit():
        print("Claude AI usage limit reached|1760000000")
        return 1

    for match in _SLEEP.finditer(prompt):
        time.sleep(float(match.group(1)))

    cwd = Path.cwd()
    with (cwd / "agent_calls.log").open("a", encoding="utf-8") as handle:
        handle.write(prompt.splitlines()[0] if prompt else "")
        handle.write("\n")

    for match in _TOUCH.finditer(prompt):
        target = cwd / match.group(1)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.touch()

    if "fail-now" in prompt:
        print("simulated failure", file=sys.stderr)
        return 3

    if args.read_stdin:
        print("Reading reference from stdin...", file=sys.stderr, flush=True)
        reference = sys.stdin.read()
        print("# Generated context")
        print()
        print(prompt.splitlines()[0] if prompt else "")
        if reference:
            print()
            print(f"Reference lines: {len(reference.splitlines())}")
        return 0

    first_line = prompt.splitlines()[0] if prompt else ""
    print(f"echo: {first_line}")
    return 0


def _consume_rate_limit() -> bool:
    counter = os.getenv("MULTI_RUNNER_ECHO_RATE_LIMITS")
    if not counter:
        return False
    path = Path(counter)
    if not path.exists():
        return False
    remaining = int(path.read_text("utf-8").strip() or "0")
    if remaining <= 0:
        return False
    path.write_text(str(remaining - 1), "utf-8")
    return True


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
