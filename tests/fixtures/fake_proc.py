#!/usr/bin/env python3
"""Fake process for runtime tests.

Run with the current interpreter so tests need no platform tools.

Usage:
    python fake_proc.py exit CODE
    python fake_proc.py emit COUNT [--stderr COUNT] [--exit-code CODE]
    python fake_proc.py echo
    python fake_proc.py head COUNT
    python fake_proc.py sleep SECONDS [--before TEXT] [--ignore-term]
    python fake_proc.py env NAME
    python fake_proc.py pwd
    python fake_proc.py holder PID_FILE

emit writes COUNT bytes of ``pattern(COUNT)`` to stdout (and optionally to
stderr), echo copies stdin to stdout until EOF, head reads COUNT bytes of
stdin and exits without reading the rest. holder starts a sleeping
grandchild that inherits stdout, writes its pid to PID_FILE, prints "ready"
and sleeps, so stdout stays open after the holder itself dies.
"""

from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time
from typing import NoReturn

UNSET = "<unset>"


def pattern(count: int) -> bytes:
    """Deterministic, non-repeating-per-pipe-buffer byte pattern."""
    return bytes(i % 251 for i in range(count))


def _write(stream, data: bytes) -> None:
    stream.buffer.write(data)
    stream.buffer.flush()


def main() -> NoReturn:
    """Main entry point."""
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="mode", required=True)

    p_exit = sub.add_parser("exit")
    p_exit.add_argument("code", type=int)

    p_emit = sub.add_parser("emit")
    p_emit.add_argument("count", type=int)
    p_emit.add_argument("--stderr", type=int, default=0)
    p_emit.add_argument("--exit-code", type=int, default=0)

    sub.add_parser("echo")

    p_head = sub.add_parser("head")
    p_head.add_argument("count", type=int)

    p_sleep = sub.add_parser("sleep")
    p_sleep.add_argument("seconds", type=float)
    p_sleep.add_argument("--before", default="")
    p_sleep.add_argument("--ignore-term", action="store_true")

    p_env = sub.add_parser("env")
    p_env.add_argument("name")

    sub.add_parser("pwd")

    p_holder = sub.add_parser("holder")
    p_holder.add_argument("pid_file")

    args = parser.parse_args()

    if args.mode == "exit":
        sys.exit(args.code)

    if args.mode == "emit":
        _write(sys.stdout, pattern(args.count))
        if args.stderr:
            _write(sys.stderr, pattern(args.stderr))
        sys.exit(args.exit_code)

    if args.mode == "echo":
        while True:
            chunk = sys.stdin.buffer.read1(65536)
            if not chunk:
                break
            _write(sys.stdout, chunk)
        sys.exit(0)

    if args.mode == "head":
        data = sys.stdin.buffer.read(args.count)
        _write(sys.stdout, data)
        sys.exit(0)

    if args.mode == "sleep":
        if args.ignore_term and hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
        if args.before:
            _write(sys.stdout, args.before.encode())
        time.sleep(args.seconds)
        sys.exit(0)

    if args.mode == "env":
        print(os.environ.get(args.name, UNSET), flush=True)
        sys.exit(0)

    if args.mode == "pwd":
        print(os.getcwd(), flush=True)
        sys.exit(0)

    if args.mode == "holder":
        grandchild = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(600)"]
        )
        # Published atomically: the file never exists half-written
        with open(args.pid_file + ".tmp", "w") as f:
            f.write(str(grandchild.pid))
        os.replace(args.pid_file + ".tmp", args.pid_file)
        _write(sys.stdout, b"ready")
        time.sleep(600)
        sys.exit(0)

    sys.exit(2)


if __name__ == "__main__":
    main()
