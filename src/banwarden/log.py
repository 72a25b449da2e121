from __future__ import annotations

import syslog
from typing import Dict

import typer


_FACILITIES: Dict[str, int] = {
    "auth": syslog.LOG_AUTH,
    "authpriv": getattr(syslog, "LOG_AUTHPRIV", syslog.LOG_AUTH),
    "daemon": syslog.LOG_DAEMON,
    "user": syslog.LOG_USER,
    "local0": syslog.LOG_LOCAL0,
    "local1": syslog.LOG_LOCAL1,
    "local2": syslog.LOG_LOCAL2,
    "local3": syslog.LOG_LOCAL3,
    "local4": syslog.LOG_LOCAL4,
    "local5": syslog.LOG_LOCAL5,
    "local6": syslog.LOG_LOCAL6,
    "local7": syslog.LOG_LOCAL7,
}

_PRIORITIES: Dict[str, int] = {
    "emerg": syslog.LOG_EMERG,
    "alert": syslog.LOG_ALERT,
    "crit": syslog.LOG_CRIT,
    "err": syslog.LOG_ERR,
    "error": syslog.LOG_ERR,
    "warn": syslog.LOG_WARNING,
    "warning": syslog.LOG_WARNING,
    "notice": syslog.LOG_NOTICE,
    "info": syslog.LOG_INFO,
    "debug": syslog.LOG_DEBUG,
}


class _LogState:
    level: int = 1
    facility: str = "stdout"
    priority: int = syslog.LOG_NOTICE


_STATE = _LogState()


def configure(level: int = 1, facility: str = "stdout", tag: str = "banwarden") -> None:
    """
    Route log lines.

    - facility "stdout" / "stderr": plain lines via typer.echo
    - anything else is read as a syslog "facility.priority" (e.g. authpriv.notice)
    """
    _STATE.level = int(level)
    _STATE.facility = (facility or "stdout").strip().lower()

    if _STATE.facility in ("stdout", "stderr"):
        return

    fac_name, _, prio_name = _STATE.facility.partition(".")
    fac = _FACILITIES.get(fac_name, syslog.LOG_USER)
    _STATE.priority = _PRIORITIES.get(prio_name or "notice", syslog.LOG_NOTICE)
    syslog.openlog(tag, syslog.LOG_PID, fac)


def enabled(level: int) -> bool:
    return int(level) <= _STATE.level


def log_line(level: int, message: str) -> None:
    """
    Emit a line if `level` <= configured level.
    0 = errors, 1 = standard, 2 = verbose, 3 = debug.
    """
    if not enabled(level):
        return

    if _STATE.facility == "stdout":
        typer.echo(f"[banwarden] {message}")
    elif _STATE.facility == "stderr":
        typer.echo(f"[banwarden] {message}", err=True)
    else:
        syslog.syslog(_STATE.priority, message)
