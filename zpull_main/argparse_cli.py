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
"""Documentation, definition of input data and ArgumentParser used by the 'zpull' CLI."""

from __future__ import (
    annotations,
)
import argparse

from zpull_main.argparse_actions import (
    CheckFractionRange,
    CheckRange,
    NonEmptyStringAction,
    SafeDirectoryNameAction,
    SSHConfigFileNameAction,
)
from zpull_main.utils import (
    DIE_STATUS,
    INSUFFICIENT_SPACE_STATUS,
    NO_COMMON_ANCESTOR_STATUS,
    PROG_NAME,
    SPACE_RECLAIM_EXHAUSTED_STATUS,
)

# constants:
__version__: str = "1.0.0"
LOG_DIR_DEFAULT: str = PROG_NAME + "-logs"
MIN_FREE_FRACTION_DEFAULT: float = 0.2
MBUFFER_SIZE_DEFAULT: str = "128M"


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by zpull."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} pulls ZFS snapshots of a filesystem from a (usually remote) source host to a local destination
filesystem, one way and incrementally, using the most recent snapshot that both sides have in common.*

On every run, {PROG_NAME} creates a new tagged snapshot on the source, finds the newest snapshot that exists
with the same name and the same creation time on both source and destination, and transfers only the delta
between that common snapshot and the new tagged snapshot via 'zfs send | zfs receive' over ssh, optionally
compressed and buffered. If the destination does not exist yet (or has no snapshots at all) a full transfer is
performed instead. Before transferring, {PROG_NAME} frees space on the destination by deleting its oldest
non-tagged snapshots until the requested fraction of the destination filesystem is available, always retaining
the newest one. After a verified successful transfer, all but the newest tagged snapshot are deleted on both
sides, so tagged snapshots do not accumulate across runs. A run that fails or has nothing to transfer deletes
the tagged snapshot it created, and leaves the source as it found it.

{PROG_NAME} never retries anything by itself. If a run fails, simply run it again later, typically from a
scheduler such as cron; the next run resumes from whatever the previous run actually achieved.
Runs against the same destination must not overlap.

# Exit codes

* 0: Success, or nothing to do because the destination is already up to date.
* 2: Invalid command line usage.
* {NO_COMMON_ANCESTOR_STATUS}: No common snapshot exists between source and destination, or the transfer failed.
* {INSUFFICIENT_SPACE_STATUS}: The destination has less space available than the estimated size of the transfer.
* {SPACE_RECLAIM_EXHAUSTED_STATUS}: Deleting old destination snapshots could not free enough space.
* {DIE_STATUS}: Any other fatal error.

# Example

`{PROG_NAME} root@backup-source:tank/home pool2/backups/home 0.25`
""")

    parser.add_argument(
        "src_spec", metavar="[USER@]HOST:SRC_DATASET",
        help="Source ZFS filesystem to replicate from, on the given remote host, reached via ssh. If no 'HOST:' part is "
             "given, the source is a ZFS filesystem on the local host.\n\n")
    parser.add_argument(
        "dst_dataset", metavar="DST_DATASET",
        help="Local destination ZFS filesystem to replicate into. Is created on the first run.\n\n")
    parser.add_argument(
        "min_free_fraction", nargs="?", default=MIN_FREE_FRACTION_DEFAULT, action=CheckFractionRange,
        metavar="MIN_FREE_FRACTION",
        help="Fraction of the destination filesystem's total size (used + available) that must be available before the "
             "transfer starts, as a number in [0, 1] or a percentage such as 20%% (default: "
             f"{MIN_FREE_FRACTION_DEFAULT}).\n\n")
    parser.add_argument(
        "--tag-host", default=None, action=NonEmptyStringAction, metavar="STRING",
        help="Identifier of the replication host that is embedded into the names of the snapshots that this tool "
             "creates, e.g. 'zpull_<tag-host>_2024-11-06_08:30:05'. Only snapshots carrying this marker are subject to "
             "retention cleanup, and only snapshots without it are subject to space reclamation. "
             "Default is the short hostname of the local host.\n\n")
    parser.add_argument(
        "--timeout", default=None, metavar="DURATION",
        help="Exit the program (with error return code) if the run takes longer than the given duration, e.g. '90s', "
             "'30m' or '2h'. Default is to never time out.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. To print what ZFS/SSH operation exactly is happening (or would happen), add the `-v -v` "
             "flag, maybe along with `-v -v -v` for ssh debug output.\n\n")
    parser.add_argument(
        "--log-dir", type=str, action=SafeDirectoryNameAction, metavar="DIR",
        help=f"Path to the log output directory on local host (optional). Default: $HOME/{LOG_DIR_DEFAULT}. The "
             f"basename of the directory must contain the substring '{LOG_DIR_DEFAULT}' as this helps prevent "
             "accidents.\n\n")
    h_fix: str = ("The path name of the log file on local host is "
                  "`${--log-dir}/${--log-file-prefix}<timestamp>${--log-file-suffix}-<random>.log`. "
                  "Example: `--log-file-prefix=zpull_ --log-file-suffix=_daily` will generate log file names such as "
                  "`zpull_2024-09-03_12:26:15_daily-bl4i1fth.log`\n\n")
    parser.add_argument(
        "--log-file-prefix", default="zpull_", action=NonEmptyStringAction, metavar="STRING",
        help="Default is zpull_. " + h_fix)
    parser.add_argument(
        "--log-file-suffix", default="", metavar="STRING",
        help="Default is the empty string. " + h_fix)
    parser.add_argument(
        "--log-syslog-address", default=None, action=NonEmptyStringAction, metavar="STRING",
        help="Host:port of the syslog machine to send messages to (e.g. 'foo.example.com:514' or '127.0.0.1:514'), or "
             "the file system path to the syslog socket file on localhost (e.g. '/dev/log'). The default is no "
             "address, i.e. do not log anything to syslog by default. See "
             "https://docs.python.org/3/library/logging.handlers.html#sysloghandler\n\n")
    parser.add_argument(
        "--log-syslog-socktype", choices=["UDP", "TCP"], default="UDP",
        help="The socket type to use to connect if no local socket file system path is used. Default is 'UDP'.\n\n")
    parser.add_argument(
        "--log-syslog-facility", type=int, min=0, max=7, default=1, action=CheckRange,
        help="The local facility aka category that identifies msg sources in syslog (default: 1, min=0, max=7).\n\n")
    parser.add_argument(
        "--log-syslog-prefix", default=PROG_NAME, action=NonEmptyStringAction, metavar="STRING",
        help=f"The name to prepend to each message that is sent to syslog; identifies {PROG_NAME} messages as opposed "
             f"to messages from other sources. Default is '{PROG_NAME}'.\n\n")
    parser.add_argument(
        "--log-syslog-level", choices=["CRITICAL", "ERROR", "WARN", "INFO", "DEBUG", "TRACE"], default="ERROR",
        help="Only send messages with equal or higher priority than this log level to syslog. Default is 'ERROR'.\n\n")
    parser.add_argument(
        "--ssh-program", default="ssh", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'ssh' executable on the PATH (default: ssh).\n\n")
    parser.add_argument(
        "--ssh-cipher", type=str, default="^aes256-gcm@openssh.com", metavar="STRING",
        help="SSH cipher specification for encrypting the session (optional); will be passed into ssh -c CLI. "
             "--ssh-cipher is a comma-separated list of ciphers listed in order of preference. See the 'Ciphers' "
             "keyword in ssh_config(5) for more information: "
             "https://manpages.ubuntu.com/manpages/man5/sshd_config.5.html. Default: `%(default)s`\n\n")
    parser.add_argument(
        "--ssh-src-port", type=int, min=1, max=65535, action=CheckRange, metavar="INT",
        help="Remote port on source host to connect to (optional).\n\n")
    parser.add_argument(
        "--ssh-src-config-file", type=str, action=SSHConfigFileNameAction, metavar="FILE",
        help="Path to SSH ssh_config(5) file to connect to the source host (optional); will be passed into ssh -F "
             "CLI.\n\n")
    parser.add_argument(
        "--ssh-control-persist-secs", type=int, min=1, default=90, action=CheckRange, metavar="INT",
        help="Keep the multiplexed ssh master connection to the source host alive for this many seconds after the "
             "last use, so subsequent commands of the same run avoid the ssh connection setup latency (default: "
             "%(default)s).\n\n")
    parser.add_argument(
        "--compression-program", default="zstd", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'zstd' executable on the PATH (default: zstd). Used to compress the data stream on the "
             "source host and decompress it on the local host if both sides have it. Use '-' to disable the use of "
             "this program.\n\n")
    parser.add_argument(
        "--compression-program-opts", default="-1", metavar="STRING",
        help="The options to be passed to the compression program on the compression step (optional). "
             "Default is '%(default)s' (fastest).\n\n")
    parser.add_argument(
        "--mbuffer-program", default="mbuffer", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'mbuffer' executable on the PATH (default: mbuffer). Used as a local buffer between the "
             "network and 'zfs receive' to smooth out the rate of data flow. Use '-' to disable the use of this "
             "program.\n\n")
    parser.add_argument(
        "--mbuffer-size", default=MBUFFER_SIZE_DEFAULT, action=NonEmptyStringAction, metavar="SIZE",
        help="Byte capacity of the mbuffer memory buffer, as understood by 'mbuffer -m' (default: %(default)s).\n\n")
    parser.add_argument(
        "--pv-program", default="pv", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'pv' executable on the PATH (default: pv). Used to enforce --bwlimit. Use '-' to "
             "disable the use of this program.\n\n")
    parser.add_argument(
        "--bwlimit", default=None, action=NonEmptyStringAction, metavar="STRING",
        help="Sets 'pv' bandwidth rate limit for the data transfer (optional). Example: `100m` to cap throughput at "
             "100 MB/sec. Default is unlimited. Also see "
             "https://manpages.ubuntu.com/manpages/man1/pv.1.html\n\n")
    parser.add_argument(
        "--shell-program", default="sh", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'sh' executable on the PATH (default: sh).\n\n")
    parser.add_argument(
        "--zfs-program", default="zfs", action=NonEmptyStringAction, metavar="STRING",
        help="The name of the 'zfs' executable on the PATH (default: zfs).\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}, by Wolfgang Hoschek",
        help="Display version information and exit.\n\n")
    # fmt: on
    return parser
