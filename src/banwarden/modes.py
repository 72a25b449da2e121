from __future__ import annotations

import os
import selectors
import signal
import subprocess
import time
from datetime import date, datetime
from typing import Iterable, List, Optional

from banwarden.collectors.logread import AttemptParser, follow_process, read_lines
from banwarden.engine import Warden
from banwarden.log import log_line


def process_lines(
    warden: Warden,
    lines: Iterable[str],
    parser: Optional[AttemptParser] = None,
    since: Optional[int] = None,
    day: Optional[date] = None,
) -> int:
    """Feed log lines to the engine. Returns the number of new bans."""
    parser = parser or AttemptParser()
    bans = 0
    for line in lines:
        att = parser.parse(line)
        if att is None:
            continue
        if since is not None and att.timestamp < since:
            continue
        if day is not None and datetime.fromtimestamp(att.timestamp).date() != day:
            continue
        if warden.on_attempt(att.address, att.timestamp):
            bans += 1
        warden.persistence.save()
    return bans


def run_batch(
    warden: Warden,
    lines: Optional[List[str]] = None,
    since: Optional[int] = None,
    day: Optional[date] = None,
) -> int:
    """entire / today / interval: one pass over the log, then sweep + forced save."""
    warden.start()
    if lines is None:
        lines = read_lines(warden.cfg.source_command)
    bans = process_lines(warden, lines, since=since, day=day)
    warden.tick()
    warden.persistence.save(force=True)
    log_line(1, f"Processed {len(lines)} log lines, {bans} new bans, {warden.store.count()} records")
    return bans


class _SignalPipe:
    """
    Delivers SIGINT/SIGTERM/SIGHUP into the select loop via set_wakeup_fd,
    so handlers never touch engine state.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

    def __init__(self) -> None:
        self.rfd, self.wfd = os.pipe()
        os.set_blocking(self.rfd, False)
        os.set_blocking(self.wfd, False)
        self._old_handlers = {}
        self._old_wakeup = -1

    def __enter__(self) -> "_SignalPipe":
        self._old_wakeup = signal.set_wakeup_fd(self.wfd)
        for sig in self.SIGNALS:
            self._old_handlers[sig] = signal.signal(sig, lambda signum, frame: None)
        return self

    def __exit__(self, *exc) -> None:
        for sig, handler in self._old_handlers.items():
            signal.signal(sig, handler)
        signal.set_wakeup_fd(self._old_wakeup)
        os.close(self.rfd)
        os.close(self.wfd)

    def drain(self) -> List[int]:
        try:
            return list(os.read(self.rfd, 64))
        except BlockingIOError:
            return []


def run_follow(warden: Warden, interval: Optional[int] = None) -> int:
    """
    Follow the log. One control flow waits for "next log chunk", "signal" or
    "tick due", whichever comes first.

    Returns 0 when stopped by SIGINT/SIGTERM, 1 when the log command could not
    start or ended.
    """
    interval = int(interval or warden.cfg.follow_check_interval)
    parser = AttemptParser()

    warden.start()
    with _SignalPipe() as sigs:
        try:
            proc = follow_process(warden.cfg.source_command)
        except OSError as e:
            log_line(0, f"Error: cannot run log command ({warden.cfg.source_command}): {e}")
            warden.shutdown()
            return 1
        log_line(1, f"Running in follow mode (check interval {interval}s)")

        sel = selectors.DefaultSelector()
        pending = b""
        next_tick = time.monotonic() + interval
        rc = None

        try:
            sel.register(proc.stdout, selectors.EVENT_READ, "log")
            sel.register(sigs.rfd, selectors.EVENT_READ, "signal")

            while rc is None:
                timeout = max(0.0, next_tick - time.monotonic())
                for key, _ in sel.select(timeout):
                    if key.data == "signal":
                        for signum in sigs.drain():
                            if signum == signal.SIGHUP:
                                warden.reload()
                            else:
                                log_line(1, f"Received signal {signum}, stopping")
                                rc = 0
                        continue

                    chunk = os.read(proc.stdout.fileno(), 65536)
                    if not chunk:
                        log_line(0, f"Error: log command ({warden.cfg.source_command}) ended")
                        if rc is None:
                            rc = 1
                        continue
                    pending += chunk
                    *lines, pending = pending.split(b"\n")
                    process_lines(warden, (ln.decode("utf-8", errors="replace") for ln in lines), parser)

                if time.monotonic() >= next_tick:
                    warden.tick()
                    next_tick = time.monotonic() + interval
        finally:
            sel.close()
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=2)
                except subprocess.TimeoutExpired:
                    proc.kill()
            proc.stdout.close()
            warden.shutdown()
    return rc


def run_wipe(warden: Warden) -> None:
    warden.reset_all()
