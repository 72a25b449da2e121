from __future__ import annotations

import time
from ipaddress import ip_address, ip_network
from typing import Any, Callable, Optional

from banwarden.config import WardenConfig
from banwarden.evaluator import Evaluator
from banwarden.firewall import FirewallBackend, FirewallReconciler
from banwarden.log import log_line
from banwarden.persistence import FileStorage, PersistenceManager
from banwarden.records import AddressRecord, RecordStore, Status
from banwarden.sweeper import SweepResult, sweep


def normalize_address(value: Any) -> Optional[str]:
    """Canonical text form of an address or CIDR network, None if unparseable."""
    s = str(value or "").strip().strip("[]")
    if not s:
        return None
    try:
        if "/" in s:
            return str(ip_network(s, strict=False))
        return ip_address(s).compressed
    except ValueError:
        return None


class Warden:
    """
    The decision engine behind every run mode.

    Event source -> on_attempt(); scheduler -> tick() / reload() / shutdown();
    wipe mode -> reset_all(). Single caller at a time: nothing here is locked.
    """

    def __init__(
        self,
        cfg: WardenConfig,
        backend: FirewallBackend,
        storage: Optional[FileStorage] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        self._clock = clock
        self.store = RecordStore()
        self.evaluator = Evaluator(self.store, cfg.attempt_count, cfg.attempt_period)
        self.firewall = FirewallReconciler(backend, cfg.fw_chain, cfg.fw_hooks, cfg.fw_action)
        self.persistence = PersistenceManager(
            self.store,
            volatile_path=cfg.volatile_path(),
            durable_path=cfg.durable_path(),
            durable_write_period=cfg.durable_write_period,
            compress_durable=cfg.compress_durable,
            storage=storage,
            clock=clock,
        )

    def _now(self) -> int:
        return int(self._clock())

    def seed_whitelist(self) -> None:
        now = self._now()
        for entry in self.cfg.whitelist:
            addr = normalize_address(entry)
            if addr is None:
                log_line(0, f"Error: ignoring invalid whitelist entry ({entry})")
                continue
            rec = self.store.get(addr)
            if rec is not None and rec.status == Status.WHITELISTED:
                continue
            if rec is not None and rec.status == Status.BANNED:
                self.firewall.unban(addr)
            self.store.upsert(AddressRecord(addr, Status.WHITELISTED, [now]))

    def start(self) -> None:
        """Load state, apply the whitelist, expire what expired while we were down."""
        self.persistence.load()
        self.seed_whitelist()
        self.tick()

    def on_attempt(self, address: Any, timestamp: Any) -> bool:
        """One failed login. Returns True if it triggered a new ban."""
        addr = normalize_address(address)
        try:
            ts = int(timestamp)
        except (TypeError, ValueError):
            ts = -1
        if addr is None or ts < 0:
            log_line(1, f"on_attempt({address},{timestamp}) malformed event, dropped")
            return False

        status = self.evaluator.add_attempt(addr, ts)
        if status == Status.WHITELISTED:
            return False
        if status == Status.BANNED:
            # banned address still knocking: make sure the rule is really there
            self.firewall.ban(addr)
            return False

        log_line(2, f"on_attempt({addr},{ts}) added record, comparing")
        if not self.evaluator.evaluate(addr):
            return False
        log_line(1, f"Banning {addr} ({self.cfg.attempt_count} attempts within {self.cfg.attempt_period}s)")
        self.firewall.ban(addr)
        return True

    def sweep(self, now: Optional[int] = None) -> SweepResult:
        return sweep(
            self.store,
            self.firewall,
            now=self._now() if now is None else now,
            ban_length=self.cfg.ban_length,
            attempt_period=self.cfg.attempt_period,
        )

    def tick(self, now: Optional[int] = None) -> SweepResult:
        res = self.sweep(now)
        self.persistence.save()
        return res

    def reload(self) -> None:
        log_line(2, "Reload requested, flushing state")
        self.persistence.save(force=True)

    def shutdown(self) -> None:
        log_line(2, "Shutting down, flushing state")
        self.persistence.save(force=True)

    def reset_all(self) -> None:
        log_line(2, "Wiping state files, unhooking and removing firewall chain")
        self.firewall.wipe_all()
        self.persistence.delete_snapshots()
        self.store.clear()
        self.store.mark_clean()
