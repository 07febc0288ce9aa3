"""Immutable process specification.

A ProcessSpec describes one invocation: executable, arguments, working
directory, environment changes and the three redirections. Building or
changing one performs no I/O; every mutator returns a new spec.

Each stream can be redirected once through the builder methods
(redirect_input/redirect_output/redirect_error); a second attempt raises
ConfigurationError.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from ..errors import ConfigurationError
from .redirection import Inherit, InputRedirection, OutputRedirection

__all__ = [
    "Environment",
    "ProcessSpec",
    "STDIN",
    "STDOUT",
    "STDERR",
]

STDIN = "stdin"
STDOUT = "stdout"
STDERR = "stderr"


class Environment(Mapping[str, str]):
    """Read-only, hashable name -> value mapping of environment additions.

    Compares equal to a dict with the same items.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, str] | Iterable[tuple[str, str]] = ()) -> None:
        self._items: dict[str, str] = dict(items)

    def __getitem__(self, name: str) -> str:
        return self._items[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self) -> int:
        return hash(frozenset(self._items.items()))

    def __repr__(self) -> str:
        return f"Environment({self._items!r})"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a process to run.

    Attributes:
        executable: Program to run, resolved through PATH when not a path
        arguments: Arguments passed after the executable
        working_directory: Working directory (None = caller's)
        environment_additions: Variables set on top of the inherited environment
        environment_removals: Variables removed last; they win over additions
        input_redirection: Where stdin comes from
        output_redirection: Where stdout goes
        error_redirection: Where stderr goes
        bound_streams: Streams already redirected (builder bookkeeping)
    """

    executable: str
    arguments: tuple[str, ...] = ()
    working_directory: Path | None = None
    environment_additions: Mapping[str, str] = field(default_factory=Environment)
    environment_removals: frozenset[str] = frozenset()
    input_redirection: InputRedirection = field(default_factory=Inherit)
    output_redirection: OutputRedirection = field(default_factory=Inherit)
    error_redirection: OutputRedirection = field(default_factory=Inherit)
    bound_streams: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not isinstance(self.executable, str) or not self.executable:
            raise ConfigurationError("executable must be a non-empty string")
        if isinstance(self.arguments, str):
            raise ConfigurationError("arguments must be a sequence, not a single string")

        object.__setattr__(self, "arguments", tuple(os.fspath(a) for a in self.arguments))
        if self.working_directory is not None:
            object.__setattr__(self, "working_directory", Path(self.working_directory))
        object.__setattr__(self, "environment_additions", Environment(self.environment_additions))
        object.__setattr__(self, "environment_removals", frozenset(self.environment_removals))

        # Redirections passed to the constructor count as bound
        bound = set(self.bound_streams)
        if not isinstance(self.input_redirection, Inherit):
            bound.add(STDIN)
        if not isinstance(self.output_redirection, Inherit):
            bound.add(STDOUT)
        if not isinstance(self.error_redirection, Inherit):
            bound.add(STDERR)
        object.__setattr__(self, "bound_streams", frozenset(bound))

    @property
    def argv(self) -> list[str]:
        """Executable followed by the arguments."""
        return [self.executable, *self.arguments]

    def merged_environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Environment for the child: base, then additions, then removals.

        Args:
            base: Inherited environment (defaults to os.environ)
        """
        env = dict(os.environ if base is None else base)
        env.update(self.environment_additions)
        for name in self.environment_removals:
            env.pop(name, None)
        return env

    # =========================================================================
    # Configuration mutators
    # =========================================================================

    def in_directory(self, path: Path | str) -> ProcessSpec:
        """Set the working directory."""
        return replace(self, working_directory=Path(path))

    def with_env(self, name: str, value: str) -> ProcessSpec:
        """Add (or override) an environment variable."""
        return replace(
            self,
            environment_additions=Environment({**self.environment_additions, name: value}),
        )

    def without_env(self, name: str) -> ProcessSpec:
        """Remove an environment variable, including an inherited one."""
        return replace(self, environment_removals=self.environment_removals | {name})

    def with_executable(self, executable: str) -> ProcessSpec:
        """Replace the executable."""
        return replace(self, executable=executable)

    def with_arguments(self, arguments: Iterable[str]) -> ProcessSpec:
        """Replace the arguments."""
        return replace(self, arguments=tuple(arguments))

    # =========================================================================
    # Redirection builder
    # =========================================================================

    def redirect_input(self, redirection: InputRedirection) -> ProcessSpec:
        """Bind stdin.

        Raises:
            ConfigurationError: If stdin is already redirected
        """
        return self._bind(STDIN, input_redirection=redirection)

    def redirect_output(self, redirection: OutputRedirection) -> ProcessSpec:
        """Bind stdout.

        Raises:
            ConfigurationError: If stdout is already redirected
        """
        return self._bind(STDOUT, output_redirection=redirection)

    def redirect_error(self, redirection: OutputRedirection) -> ProcessSpec:
        """Bind stderr.

        Raises:
            ConfigurationError: If stderr is already redirected
        """
        return self._bind(STDERR, error_redirection=redirection)

    def _bind(self, stream: str, **changes: object) -> ProcessSpec:
        if stream in self.bound_streams:
            raise ConfigurationError(f"{stream} of {self.executable!r} is already redirected")
        return replace(self, bound_streams=self.bound_streams | {stream}, **changes)
