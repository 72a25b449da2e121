from __future__ import annotations

from dataclasses import dataclass

from banwarden.firewall import FirewallReconciler
from banwarden.log import log_line
from banwarden.records import RecordStore, Status


@dataclass
class SweepResult:
    expired_bans: int = 0
    reasserted_bans: int = 0
    stale_tracked: int = 0


def sweep(
    store: RecordStore,
    reconciler: FirewallReconciler,
    now: int,
    ban_length: int,
    attempt_period: int,
) -> SweepResult:
    """
    Expire bans and stale tracked records.

    Bans that are still valid are pushed to the firewall again on every sweep,
    so a rule removed behind our back (firewall reload, reboot) comes back
    without waiting for a new attempt from that address.
    """
    res = SweepResult()

    for rec in store.all():
        if rec.status == Status.BANNED:
            age = now - rec.ban_start
            log_line(3, f"sweep({rec.address}) banned for {age}s of {ban_length}s")
            if age >= ban_length:
                log_line(1, f"Ban expired for {rec.address}, removing from firewall")
                reconciler.unban(rec.address)
                store.remove(rec.address)
                res.expired_bans += 1
            else:
                reconciler.ban(rec.address)
                res.reasserted_bans += 1

        elif rec.status == Status.TRACKED:
            if now - rec.newest >= attempt_period:
                log_line(3, f"sweep({rec.address}) last attempt too old, forgetting")
                store.remove(rec.address)
                res.stale_tracked += 1

    return res
