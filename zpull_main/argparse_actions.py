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
"""Custom argparse actions of the zpull CLI; they reject bad names and out-of-range numbers while parsing, so that a
usage error exits with status 2 before any ZFS command runs."""

from __future__ import (
    annotations,
)
import argparse
import operator
from typing import (
    Any,
    Callable,
    final,
)

from zpull_main.utils import (
    SHELL_CHARS,
)


#############################################################################
class _StrippedStringAction(argparse.Action):
    """Strips surrounding whitespace, rejects the empty string, then applies the ``problem()`` check of subclasses."""

    def problem(self, value: str) -> str | None:
        return None

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        value: str = values.strip()
        if not value:
            parser.error(f"{option_string}: Empty string is not valid")
        msg: str | None = self.problem(value)
        if msg:
            parser.error(f"{option_string}: {msg}")
        setattr(namespace, self.dest, value)


@final
class NonEmptyStringAction(_StrippedStringAction):
    pass


@final
class SSHConfigFileNameAction(_StrippedStringAction):
    """The file name ends up on the ssh command line, so it must not contain whitespace or shell metacharacters."""

    def problem(self, value: str) -> str | None:
        if any(char in SHELL_CHARS or char.isspace() for char in value):
            return f"Invalid file name '{value}': must not contain whitespace or special chars."
        return None


@final
class SafeDirectoryNameAction(_StrippedStringAction):
    """Plain spaces are fine in a directory name; tabs, newlines and other whitespace are not."""

    def problem(self, value: str) -> str | None:
        if any(char.isspace() and char != " " for char in value):
            return f"Invalid dir name '{value}': must not contain whitespace other than space."
        return None


#############################################################################
class CheckRange(argparse.Action):
    """Checks an int or float argument against optional bounds given as extra add_argument() keywords: ``min`` and
    ``max`` are inclusive, ``inf`` and ``sup`` are exclusive. For example min=0, sup=1 means [0, 1)."""

    bounds: dict[str, Callable[[Any, Any], bool]] = {  # noqa: RUF012
        "min": operator.ge,
        "inf": operator.gt,
        "max": operator.le,
        "sup": operator.lt,
    }

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        for inclusive, exclusive in (("min", "inf"), ("max", "sup")):
            if inclusive in kwargs and exclusive in kwargs:
                raise ValueError(f"either {inclusive} or {exclusive}, but not both")
        self.limits: dict[str, Any] = {name: kwargs.pop(name) for name in self.bounds if name in kwargs}
        super().__init__(*args, **kwargs)

    def interval(self) -> str:
        """Describes the accepted values in interval notation, e.g. "valid range: [0, 7]"."""
        limits = self.limits
        lower: str = f"[{limits['min']}" if "min" in limits else f"({limits['inf']}" if "inf" in limits else "(-infinity"
        upper: str = f"{limits['max']}]" if "max" in limits else f"{limits['sup']})" if "sup" in limits else "+infinity)"
        return f"valid range: {lower}, {upper}"

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        if not all(self.bounds[name](values, limit) for name, limit in self.limits.items()):
            raise argparse.ArgumentError(self, self.interval())
        setattr(namespace, self.dest, values)


#############################################################################
@final
class CheckFractionRange(CheckRange):
    """Accepts a fraction such as 0.2 or a percentage such as 20%, and stores it as a float fraction within [0, 1]."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("min", 0.0)
        kwargs.setdefault("max", 1.0)
        super().__init__(*args, **kwargs)

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        if isinstance(values, float):
            super().__call__(parser, namespace, values, option_string=option_string)
            return
        text: str = str(values).strip()
        divisor: float = 100.0 if text.endswith("%") else 1.0
        try:
            number = float(text.rstrip("%")) / divisor
        except ValueError:
            number = float("nan")
        if number != number:  # NaN
            parser.error(f"{option_string or self.dest}: Invalid fraction or percentage: {values}")
        super().__call__(parser, namespace, number, option_string=option_string)
