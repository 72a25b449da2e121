from __future__ import annotations

import re
import shlex
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from banwarden.log import log_line


@dataclass(frozen=True)
class Attempt:
    address: str
    timestamp: int


# logread (OpenWrt):   "Mon Jan  1 12:00:00 2024 authpriv.warn dropbear[123]: ..."
_LOGREAD_TS = re.compile(r"^[A-Z][a-z]{2} ([A-Z][a-z]{2}\s+\d{1,2} \d{2}:\d{2}:\d{2} \d{4}) ")
# classic syslog:      "Jan 30 10:15:23 host sshd[1234]: ..."
_SYSLOG_TS = re.compile(r"^([A-Z][a-z]{2}\s+\d{1,2} \d{2}:\d{2}:\d{2}) ")
# rsyslog high-precision: "2024-01-30T10:15:23.123456+01:00 host sshd[1234]: ..."
_ISO_TS = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?) ")

_PID = re.compile(r"\b(?P<prog>dropbear|sshd)\[(?P<pid>\d+)\]:")

_FAIL_PATTERNS = [
    # dropbear: address is "host:port"
    (re.compile(r"Bad (?:PAM )?password attempt for .* from (?P<ip>\S+)"), True),
    (re.compile(r"Login attempt for nonexistent user(?: from (?P<ip>\S+))?"), True),
    (re.compile(r"Exit before auth.* from <?(?P<ip>[^>\s]+)>?"), True),
    # sshd: port is logged separately (" port N"). "Invalid user X from A" is not
    # matched, the "Failed password for invalid user" line of the same login is.
    (re.compile(r"Failed password for (?:invalid user\s+)?\S+ from (?P<ip>\S+)(?: port \d+)?", re.IGNORECASE), False),
]

_IGNORE = re.compile(r"has invalid shell, rejected$")
_CHILD = re.compile(r"Child connection from <?(?P<ip>[^>\s]+)>?")
_IPV4 = re.compile(r"(\d{1,3}(?:\.\d{1,3}){3})")


def parse_line_time(line: str, now: Optional[datetime] = None) -> Optional[int]:
    """Epoch seconds of a log line (local time), None if no known prefix."""
    m = _LOGREAD_TS.match(line)
    if m:
        try:
            dt = datetime.strptime(" ".join(m.group(1).split()), "%b %d %H:%M:%S %Y")
            return int(time.mktime(dt.timetuple()))
        except ValueError:
            return None

    m = _ISO_TS.match(line)
    if m:
        try:
            return int(datetime.fromisoformat(m.group(1).replace("Z", "+00:00")).timestamp())
        except ValueError:
            return None

    m = _SYSLOG_TS.match(line)
    if m:
        # no year in the line: assume the current one
        year = (now or datetime.now()).year
        try:
            dt = datetime.strptime(f"{' '.join(m.group(1).split())} {year}", "%b %d %H:%M:%S %Y")
            return int(time.mktime(dt.timetuple()))
        except ValueError:
            return None
    return None


def extract_ip(raw: str, with_port: bool = True) -> Optional[str]:
    """
    "1.2.3.4:5555" -> 1.2.3.4, "[2001:db8::2]:22" -> 2001:db8::2,
    "2001:db8::2:5555" (dropbear host:port) -> 2001:db8::2

    with_port=False takes a bare IPv6 address as is (sshd logs the port apart).
    """
    s = (raw or "").strip().strip("<>,;")
    if not s:
        return None
    if s.startswith("["):
        return s[1:s.find("]")] if "]" in s else None
    m = _IPV4.search(s)
    if m:
        return m.group(1)
    if s.count(":") >= 2:
        if not with_port:
            return s
        head, _, tail = s.rpartition(":")
        # dropbear appends ":port" to IPv6 hosts
        if tail.isdigit() and head.count(":") >= 2 and not head.endswith(":"):
            return head
        return s
    return None


class AttemptParser:
    """
    Turns authentication-failure log lines into Attempts.

    Keeps a small pid -> address map from "Child connection from" lines, since
    older dropbear builds log "Login attempt for nonexistent user" without the
    client address.
    """

    def __init__(self, max_pids: int = 512) -> None:
        self.max_pids = int(max_pids)
        self._pid_ip: Dict[str, str] = {}

    def _remember(self, pid: str, ip: str) -> None:
        if len(self._pid_ip) >= self.max_pids:
            self._pid_ip.pop(next(iter(self._pid_ip)))
        self._pid_ip[pid] = ip

    def parse(self, line: str) -> Optional[Attempt]:
        line = (line or "").strip()
        if not line or _IGNORE.search(line):
            return None

        pm = _PID.search(line)
        pid = pm.group("pid") if pm else ""

        cm = _CHILD.search(line)
        if cm:
            ip = extract_ip(cm.group("ip"))
            if pid and ip:
                self._remember(pid, ip)
            return None

        for rx, with_port in _FAIL_PATTERNS:
            m = rx.search(line)
            if not m:
                continue
            raw_ip = m.groupdict().get("ip")
            ip = extract_ip(raw_ip, with_port) if raw_ip else self._pid_ip.get(pid)
            ts = parse_line_time(line)
            if not ip or ts is None:
                log_line(1, f"Error: address({ip}) or time({ts}) unresolvable, malformed line ({line[:200]})")
                return None
            return Attempt(ip, ts)
        return None


def _argv(command: str) -> List[str]:
    return shlex.split(command)


def read_lines(command: str, timeout: float = 60.0) -> List[str]:
    """One-shot dump of the log (logread, journalctl ..., cat file)."""
    try:
        r = subprocess.run(_argv(command), capture_output=True, text=True, errors="replace", timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        log_line(0, f"Error: cannot run log command ({command}): {e!r}")
        return []
    if r.returncode != 0:
        log_line(0, f"Error: log command ({command}) exited {r.returncode}: {(r.stderr or '').strip()}")
    return (r.stdout or "").splitlines()


def follow_process(command: str) -> subprocess.Popen:
    """Start `<command> -f` with a raw binary stdout pipe (for a selector)."""
    return subprocess.Popen(
        [*_argv(command), "-f"],
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        bufsize=0,
    )
