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
"""Progress monitor for the data transfer; counts the bytes that the control thread moves from the producer chain to the
consumer and periodically prints a single status line showing transferred bytes, percent of estimate and throughput.

The reporter is purely observational: it is fed by the copy loop of the control thread and never blocks or fails the
transfer.
"""

from __future__ import (
    annotations,
)
import sys
import time
from collections import (
    deque,
)
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Callable,
    Final,
    NamedTuple,
    TextIO,
)

from zpull_main.utils import (
    LOG_TRACE,
    human_readable_bytes,
    percent,
)


#############################################################################
class ProgressReporter:
    """Periodically prints progress updates to the same console status line, which is helpful if the program runs in an
    interactive Unix terminal session.

    Prints the status line to the console (but not to the log file), and in doing so "visually overwrites" the previous
    status line, via appending a \r carriage return control char rather than a \n newline char. Does not print a status line
    if the Unix environment var 'zpull_isatty' is set to 'false', in order not to confuse programs that scrape redirected
    stdout; the status is then logged at TRACE level instead. Example console status line:
    2025-01-17 01:23:04 [I] zfs sent 41.7 GiB 0:00:46 [963 MiB/s] [907 MiB/s] 80% of 52.1 GiB
    """

    class Sample(NamedTuple):
        """Sliding window entry for throughput calculation."""

        sent_bytes: int
        timestamp_nanos: int

    def __init__(
        self,
        log: Logger,
        estimated_bytes: int,
        isatty: bool,
        update_interval_secs: float = 1,
        sliding_window_secs: float = 30,
        stream: TextIO | None = None,
        clock: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        # immutable variables:
        self._log: Final[Logger] = log
        self._estimated_bytes: Final[int] = estimated_bytes
        self._isatty: Final[bool] = isatty
        self._update_interval_nanos: Final[int] = round(max(0.0, update_interval_secs) * 1_000_000_000)
        self._sliding_window_nanos: Final[int] = round(max(update_interval_secs, sliding_window_secs) * 1_000_000_000)
        self._stream: Final[TextIO] = sys.stdout if stream is None else stream
        self._clock: Final[Callable[[], int]] = clock

        # mutable variables:
        self.sent_bytes: int = 0
        self.start_time_nanos: int = clock()
        self._next_update_nanos: int = self.start_time_nanos + self._update_interval_nanos
        self._last_status_len: int = 0
        self._latest_samples: deque[ProgressReporter.Sample] = deque([self.Sample(0, self.start_time_nanos)])

    def add(self, num_bytes: int) -> None:
        """Records that ``num_bytes`` more bytes were transferred, and prints a status line if one is due."""
        self.sent_bytes += num_bytes
        curr_time_nanos: int = self._clock()
        if curr_time_nanos >= self._next_update_nanos:
            self._report(curr_time_nanos)
            self._next_update_nanos = curr_time_nanos + self._update_interval_nanos
            self._latest_samples.append(self.Sample(self.sent_bytes, curr_time_nanos))
            if curr_time_nanos - self._latest_samples[0].timestamp_nanos > self._sliding_window_nanos:
                self._latest_samples.popleft()  # slide the sliding window containing recent measurements

    def elapsed_nanos(self) -> int:
        return self._clock() - self.start_time_nanos

    def finish(self) -> None:
        """Terminates the status line, if any, so subsequent log output starts on a fresh console line."""
        if self._last_status_len > 0:
            self._stream.write(" " * self._last_status_len + "\r")
            self._stream.flush()
            self._last_status_len = 0

    def status_line(self, curr_time_nanos: int) -> str:
        """Returns the current status line, without timestamp and level prefix."""
        elapsed_nanos: int = curr_time_nanos - self.start_time_nanos
        msg0, msg3 = self._format_sent_bytes(self.sent_bytes, elapsed_nanos)  # throughput since transfer start time
        msg1: str = self._format_duration(elapsed_nanos)
        oldest: ProgressReporter.Sample = self._latest_samples[0]  # throughput over sliding window
        _, msg2 = self._format_sent_bytes(self.sent_bytes - oldest.sent_bytes, curr_time_nanos - oldest.timestamp_nanos)
        msg4: str = ""
        if self._estimated_bytes > 0:
            msg4 = f"{percent(self.sent_bytes, self._estimated_bytes)} of {human_readable_bytes(self._estimated_bytes)}"
        return f"zfs sent {msg0} {msg1} {msg2} {msg3} {msg4}".rstrip()

    def _report(self, curr_time_nanos: int) -> None:
        status: str = self.status_line(curr_time_nanos)
        if not self._isatty:
            self._log.log(LOG_TRACE, "%s", status)
            return
        timestamp: str = datetime.now().isoformat(sep=" ", timespec="seconds")  # 2024-09-03 12:26:15
        status_line: str = f"{timestamp} [I] {status}"
        status_line = status_line.ljust(self._last_status_len)  # "overwrite" trailing chars of previous status with spaces

        # The Unix console skips back to the beginning of the console line when it sees this \r control char:
        self._stream.write(f"{status_line}\r")
        self._stream.flush()
        self._last_status_len = len(status_line.rstrip())

    @staticmethod
    def _format_sent_bytes(num_bytes: int, duration_nanos: int) -> tuple[str, str]:
        """Returns a human-readable byte count and rate."""
        bytes_per_sec: int = round(1_000_000_000 * num_bytes / max(1, duration_nanos))
        return f"{human_readable_bytes(num_bytes, precision=2)}", f"[{human_readable_bytes(bytes_per_sec, precision=2)}/s]"

    @staticmethod
    def _format_duration(duration_nanos: int) -> str:
        """Formats ``duration_nanos`` as HH:MM:SS string."""
        total_seconds: int = duration_nanos // 1_000_000_000
        hours, remainder = divmod(total_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{hours}:{minutes:02d}:{seconds:02d}"
