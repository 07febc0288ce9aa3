"""procflow command line entry point.

Runs one command with the requested redirections and mirrors its exit
status:
- child exit code when it exited normally
- 128 + signal when it was killed by a signal
- 124 on --timeout, 127 when it could not be started
- 2 for invalid options (malformed --env, a stream redirected twice),
  1 for other procflow failures (e.g. an unopenable redirection file)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Any

import anyio

from . import __version__
from .config import Config, get_config
from .errors import ConfigurationError, ProcessStartError, ProcflowError
from .report import RunReport
from .runtime import (
    Discard,
    FromFile,
    ProcessResult,
    ProcessRunner,
    ProcessSpec,
    ToFile,
    ToSink,
)
from .runtime.sinks import collect_bytes

__all__ = ["build_parser", "build_spec", "run_command", "main"]

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_TIMEOUT = 124
EXIT_NOT_STARTED = 127


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procflow",
        description="Run a command with redirected, fully drained streams.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--cwd", type=Path, help="working directory")
    parser.add_argument(
        "--env", action="append", default=[], metavar="NAME=VALUE",
        help="set an environment variable (repeatable)",
    )
    parser.add_argument(
        "--unset", action="append", default=[], metavar="NAME",
        help="remove an environment variable, wins over --env (repeatable)",
    )
    parser.add_argument("--stdin", type=Path, metavar="PATH", help="read stdin from a file")
    parser.add_argument("--stdout", type=Path, metavar="PATH", help="write stdout to a file")
    parser.add_argument("--stderr", type=Path, metavar="PATH", help="write stderr to a file")
    parser.add_argument(
        "--append", action="store_true",
        help="append to --stdout/--stderr files instead of truncating",
    )
    parser.add_argument("--discard-stdout", action="store_true", help="drop stdout")
    parser.add_argument("--discard-stderr", action="store_true", help="drop stderr")
    parser.add_argument(
        "--capture", action="store_true",
        help="capture stdout and stderr and print them after the command ends",
    )
    parser.add_argument("--json", action="store_true", help="print a JSON run report")
    parser.add_argument("--timeout", type=float, metavar="SECONDS", help="terminate after SECONDS")
    parser.add_argument("command", nargs="+", help="executable and arguments (after --)")
    return parser


def build_spec(args: argparse.Namespace) -> ProcessSpec:
    """Translate parsed arguments into a ProcessSpec.

    Raises:
        ConfigurationError: On a malformed --env or a stream redirected twice
    """
    spec = ProcessSpec(args.command[0], args.command[1:])

    if args.cwd is not None:
        spec = spec.in_directory(args.cwd)
    for item in args.env:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ConfigurationError(f"--env expects NAME=VALUE, got {item!r}")
        spec = spec.with_env(name, value)
    for name in args.unset:
        spec = spec.without_env(name)

    if args.stdin is not None:
        spec = spec.redirect_input(FromFile(args.stdin))

    capture = args.capture or args.json
    if args.stdout is not None:
        spec = spec.redirect_output(ToFile(args.stdout, append=args.append))
    if args.discard_stdout:
        spec = spec.redirect_output(Discard())
    if capture and "stdout" not in spec.bound_streams:
        spec = spec.redirect_output(ToSink(collect_bytes()))

    if args.stderr is not None:
        spec = spec.redirect_error(ToFile(args.stderr, append=args.append))
    if args.discard_stderr:
        spec = spec.redirect_error(Discard())
    if capture and "stderr" not in spec.bound_streams:
        spec = spec.redirect_error(ToSink(collect_bytes()))

    return spec


def _exit_status(exit_code: int) -> int:
    return exit_code if exit_code >= 0 else 128 - exit_code


def _print_captured(result: ProcessResult[Any, Any]) -> None:
    if isinstance(result.output, bytes):
        sys.stdout.buffer.write(result.output)
        sys.stdout.buffer.flush()
    if isinstance(result.error, bytes):
        sys.stderr.buffer.write(result.error)
        sys.stderr.buffer.flush()


async def run_command(
    spec: ProcessSpec,
    *,
    timeout: float | None = None,
    as_json: bool = False,
    runner: ProcessRunner | None = None,
) -> int:
    """Run ``spec``, report the outcome and return the exit status to use."""
    runner = runner or ProcessRunner()
    started = time.monotonic()

    try:
        running = await runner.spawn(spec)
    except ProcessStartError as e:
        print(f"procflow: {e}", file=sys.stderr)
        return EXIT_NOT_STARTED
    except ProcflowError as e:
        print(f"procflow: {e}", file=sys.stderr)
        return EXIT_FAILURE

    logger.info(f"Started {spec.executable} pid={running.pid}")
    timed_out = False
    try:
        if timeout is None:
            result = await running.wait_for_exit()
        else:
            try:
                with anyio.fail_after(timeout):
                    result = await running.wait_for_exit()
            except TimeoutError:
                logger.info(f"Timeout after {timeout}s, terminating pid={running.pid}")
                timed_out = True
                result = await running.terminate(timeout=runner.term_timeout)
    except ProcflowError as e:
        print(f"procflow: {e}", file=sys.stderr)
        return EXIT_FAILURE

    duration = time.monotonic() - started
    logger.info(
        f"Finished {spec.executable} pid={running.pid} "
        f"outcome={running.outcome.value} exit_code={result.exit_code} "
        f"duration={duration:.3f}s"
    )

    if as_json:
        report = RunReport.from_result(
            spec, result, outcome=running.outcome, duration_s=duration
        )
        print(report.model_dump_json())
    else:
        _print_captured(result)

    if timed_out:
        return EXIT_TIMEOUT
    return _exit_status(result.exit_code)


def configure_logging(config: Config) -> None:
    """Configure handlers: debug log file, or warnings on stderr."""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG mode: write to the temp log file
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        # stderr is shared with the child's stderr
        log_level = logging.WARNING

    # Third-party loggers stay at WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # Verbose logging only for the procflow namespace
    logging.getLogger("procflow").setLevel(log_level)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = get_config()
    configure_logging(config)
    logger.debug(f"Loaded {config}")

    try:
        spec = build_spec(args)
    except ConfigurationError as e:
        print(f"procflow: {e}", file=sys.stderr)
        sys.exit(EXIT_USAGE)

    sys.exit(asyncio.run(run_command(spec, timeout=args.timeout, as_json=args.json)))


if __name__ == "__main__":
    main()
