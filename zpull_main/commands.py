# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Typed builders for CLI commands, shell pipelines and batched shell scripts.

Commands are argv token lists; they are never assembled by string concatenation. Rendering into a shell string happens
exactly once, via shlex.join(), right before a command crosses a shell boundary, i.e. when it is run via 'sh -c' locally or
via the remote shell that ssh spawns. This way a batched script that runs several commands in a single ssh round trip is
composed from validated tokens only.

Example:
--------
```
Script.all_of(
    Command.of("zfs", "list", "-Hp", "-o", "used,available", "tank/foo"),
    Command.of("zfs", "list", "-t", "snapshot", "-d", "1", "-Hp", "-o", "name,creation", "tank/foo"),
)
```
renders as ``zfs list -Hp -o used,available tank/foo && zfs list -t snapshot -d 1 -Hp -o name,creation tank/foo``
"""

from __future__ import (
    annotations,
)
import shlex
from dataclasses import (
    dataclass,
    replace,
)
from typing import (
    Final,
    Iterable,
    Union,
)

# constants:
_FORBIDDEN_CHARS: Final[tuple[str, ...]] = ("\0", "\n", "\r")
DISCARD_STDOUT: Final[str] = "> /dev/null"
MERGE_STDERR: Final[str] = "2>&1"


def _flatten(tokens: Iterable[str | Iterable[str] | None]) -> list[str]:
    """Flattens nested token iterables, skipping None and empty strings."""
    result: list[str] = []
    for token in tokens:
        if token is None:
            continue
        if isinstance(token, str):
            if token:
                result.append(token)
        else:
            result.extend(_flatten(token))
    return result


#############################################################################
@dataclass(frozen=True)
class Command:
    """A single CLI command, as an immutable tuple of argv tokens. An optional fixed redirect applies to the whole command; a
    command with a redirect needs a shell to run."""

    argv: tuple[str, ...]
    redirect: str = ""

    def __post_init__(self) -> None:
        if len(self.argv) == 0:
            raise ValueError("Command must not be empty")
        for token in self.argv:
            if not isinstance(token, str):
                raise TypeError(f"Command token must be a str: {token!r}")
            if any(char in token for char in _FORBIDDEN_CHARS):
                raise ValueError(f"Command token must not contain a NUL or newline character: {token!r}")
        if self.redirect not in ("", DISCARD_STDOUT, MERGE_STDERR):
            raise ValueError(f"Unsupported redirect: {self.redirect!r}")

    @classmethod
    def of(cls, *tokens: str | Iterable[str] | None) -> Command:
        """Builds a command from tokens; nested iterables are flattened, None and empty strings are dropped."""
        return cls(tuple(_flatten(tokens)))

    def discard_stdout(self) -> Command:
        return replace(self, redirect=DISCARD_STDOUT)

    def merge_stderr(self) -> Command:
        """Returns a new command whose stderr goes wherever its stdout goes."""
        return replace(self, redirect=MERGE_STDERR)

    @property
    def program(self) -> str:
        """Returns the name of the program to execute."""
        return self.argv[0]

    def render(self) -> str:
        """Returns the command as a single shell-safe string."""
        return shlex.join(self.argv) + (" " + self.redirect if self.redirect else "")

    def __str__(self) -> str:
        return self.render()


#############################################################################
@dataclass(frozen=True)
class Pipeline:
    """Commands connected stdout-to-stdin, as in ``a | b | c``."""

    commands: tuple[Command, ...]

    def __post_init__(self) -> None:
        if len(self.commands) == 0:
            raise ValueError("Pipeline must not be empty")

    @classmethod
    def of(cls, *commands: Command | None) -> Pipeline:
        """Builds a pipeline, skipping absent (None) optional stages."""
        return cls(tuple(cmd for cmd in commands if cmd is not None))

    def render(self) -> str:
        """Returns the pipeline as a single shell string."""
        return " | ".join(cmd.render() for cmd in self.commands)

    def __str__(self) -> str:
        return self.render()


#############################################################################
@dataclass(frozen=True)
class Script:
    """A sequence of commands or pipelines that runs in a single shell invocation, i.e. in a single remote round trip. A
    nested script step is grouped in braces, so it runs as a unit."""

    steps: tuple[Step, ...]
    separator: str = " && "

    def __post_init__(self) -> None:
        if len(self.steps) == 0:
            raise ValueError("Script must not be empty")
        if self.separator not in (" && ", "; "):
            raise ValueError(f"Unsupported script separator: {self.separator!r}")

    @classmethod
    def all_of(cls, *steps: Step) -> Script:
        """Runs each step only if all previous steps succeeded."""
        return cls(tuple(steps), " && ")

    @classmethod
    def each_of(cls, *steps: Step) -> Script:
        """Runs every step regardless of the outcome of previous steps; the exit status is the one of the last step."""
        return cls(tuple(steps), "; ")

    def render(self) -> str:
        """Returns the script as a single shell string."""
        return self.separator.join(_render_step(step) for step in self.steps)

    def __str__(self) -> str:
        return self.render()


Step = Union[Command, Pipeline, Script]


def _render_step(step: Step) -> str:
    return f"{{ {step.render()}; }}" if isinstance(step, Script) else step.render()
