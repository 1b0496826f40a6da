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
"""Detection of the optional helper programs (compressor, buffer, rate limiter, shell) on the source and local host.

A missing helper is not an error; the pipeline stage that needs it is simply left out.
"""

from __future__ import (
    annotations,
)
import subprocess
from typing import (
    TYPE_CHECKING,
    Final,
)

from zpull_main.commands import (
    Command,
    Script,
)
from zpull_main.connection import (
    run_ssh_command,
)
from zpull_main.utils import (
    LOG_TRACE,
    die,
    list_formatter,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zpull_main.configuration import (
        Params,
        Remote,
    )
    from zpull_main.zpull import (
        Job,
    )

# constants:
DISABLE_PRG: Final[str] = "-"


def detect_available_programs(job: Job) -> None:
    """Detects the programs available on the local host and on the source host, with one shell script per host."""
    p, log = job.params, job.params.log
    available_programs: dict[str, dict[str, str]] = p.available_programs
    available_programs.clear()
    local_programs: dict[str, str] = _detect_available_programs_on(job, p.dst, p.shell_program_local)
    available_programs["local"] = local_programs
    available_programs["dst"] = local_programs
    if p.src.ssh_user_host:
        if "ssh" not in local_programs:
            die(f"{p.ssh_program} CLI is not available to talk to remote host. Install {p.ssh_program} first!")
        available_programs["src"] = _detect_available_programs_on(job, p.src, p.shell_program)
    else:
        available_programs["src"] = local_programs

    locations = ["src", "dst", "local"]
    if p.compression_program == DISABLE_PRG:
        _disable_program(p, "zstd", locations)
    if p.mbuffer_program == DISABLE_PRG:
        _disable_program(p, "mbuffer", locations)
    if p.pv_program == DISABLE_PRG:
        _disable_program(p, "pv", locations)
    if p.shell_program == DISABLE_PRG:
        _disable_program(p, "sh", ["src"])

    for key, programs in available_programs.items():
        log.debug(f"available_programs[{key}]: %s", list_formatter(programs, separator=", "))
    for r in [p.src, p.dst]:
        if "zfs" not in available_programs[r.location]:
            die(f"{p.zfs_program} CLI is not available on {r.location} host: {r.host_description}")


def _disable_program(p: Params, program: str, locations: list[str]) -> None:
    """Removes the given program from the available_programs mapping."""
    for location in locations:
        p.available_programs[location] = {k: v for k, v in p.available_programs[location].items() if k != program}


def _find_available_programs(p: Params) -> Script:
    """POSIX shell script that prints the name of each program it finds on the PATH; the trailing 'true' makes the script
    succeed even if the last program is missing."""
    programs: dict[str, str] = {
        "zfs": p.zfs_program,
        "ssh": p.ssh_program,
        "sh": p.shell_program,
        "zstd": p.compression_program,
        "mbuffer": p.mbuffer_program,
        "pv": p.pv_program,
    }
    checks: list[Script] = [
        Script.all_of(Command.of("command", "-v", program).discard_stdout(), Command.of("printf", "%s\\n", name))
        for name, program in programs.items()
    ]
    return Script.each_of(*checks, Command.of("true"))


def _detect_available_programs_on(job: Job, remote: Remote, shell_program: str) -> dict[str, str]:
    """Runs the detection script via the given shell on the host of ``remote``, and returns the names of programs found."""
    p, log = job.params, job.params.log
    if shell_program == DISABLE_PRG:
        log.warning("%s", f"Shell is disabled on {remote.location}. Continuing with minimal assumptions...")
        return {"zfs": ""}
    cmd = Command.of(shell_program, "-c", _find_available_programs(p).render())
    try:
        stdout: str = run_ssh_command(job, remote, cmd, level=LOG_TRACE)
    except (FileNotFoundError, PermissionError) as e:  # location is local and shell program file was not found
        if e.filename != shell_program:
            raise
    except subprocess.CalledProcessError:
        pass
    else:
        return dict.fromkeys(stdout.splitlines(), "")
    log.warning("%s", f"Failed to find {shell_program} on {remote.location}. Continuing with minimal assumptions...")
    return {"zfs": ""}
