"""Local deterministic agent for adapter and engine integration tests."""

from __future__ import annotations

import argparse
import signal
import sys
import time

COMPLETION_MARKER = "<promise>COMPLETE</promise>"


def main(argv: list[str] | None = None) -> int:
    """Echo the first prompt line, then behave as instructed by flags."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt")
    parser.add_argument("--complete", action="store_true")
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--stderr", default="")
    parser.add_argument("--ignore-interrupt", action="store_true")
    parser.add_argument("--permission-prompt", default="")
    args = parser.parse_args(argv)

    if args.ignore_interrupt:
        signal.signal(signal.SIGINT, signal.SIG_IGN)

    headline = args.prompt.splitlines()[0] if args.prompt else ""
    print(f"echo: {headline}", flush=True)
    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)
    if args.permission_prompt:
        print(f"Claude wants to run: {args.permission_prompt}", flush=True)

    try:
        if args.sleep > 0:
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("echo: interrupted", flush=True)
        return 130

    if args.complete:
        print(COMPLETION_MARKER, flush=True)
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
