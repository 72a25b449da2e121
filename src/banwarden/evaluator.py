from __future__ import annotations

from banwarden.log import log_line
from banwarden.records import AddressRecord, RecordStore, Status, merge_times


class Evaluator:
    """
    Sliding-window ban decision.

    An address is banned once `attempt_count` attempts (consecutive by index,
    oldest first) fit within `attempt_period` seconds. The window is inclusive:
    newest - oldest == attempt_period still bans.
    """

    def __init__(self, store: RecordStore, attempt_count: int, attempt_period: int) -> None:
        self.store = store
        self.attempt_count = int(attempt_count)
        self.attempt_period = int(attempt_period)

    def add_attempt(self, address: str, timestamp: int, *more: int) -> Status:
        times = [int(timestamp), *(int(t) for t in more)]
        rec = self.store.get(address)

        if rec is None:
            self.store.upsert(AddressRecord(address, Status.TRACKED, merge_times([], times)))
            return Status.TRACKED

        if rec.status == Status.WHITELISTED:
            log_line(2, f"add_attempt({address}) address is whitelisted")
            return rec.status

        if rec.status == Status.BANNED:
            newest = max(rec.ban_start, *times)
            if newest > rec.ban_start:
                log_line(2, f"add_attempt({address}) already banned, renewing ban start to {newest}")
                self.store.upsert(AddressRecord(address, Status.BANNED, [newest]))
            else:
                log_line(2, f"add_attempt({address}) already banned, ban start already newer")
            return rec.status

        self.store.upsert(AddressRecord(address, Status.TRACKED, merge_times(rec.timestamps, times)))
        return Status.TRACKED

    def evaluate(self, address: str) -> bool:
        """Trim/ban loop for a TRACKED record. Returns True when a ban was triggered."""
        rec = self.store.get(address)
        if rec is None or rec.status != Status.TRACKED:
            return False

        times = list(rec.timestamps)
        trimmed = False
        banned = False

        while len(times) >= self.attempt_count:
            oldest, newest = times[0], times[-1]
            diff = newest - oldest
            log_line(3, f"evaluate({address}) count={len(times)} diff={diff}/{self.attempt_period}")
            if diff <= self.attempt_period:
                banned = True
                break
            times.pop(0)
            trimmed = True

        if banned:
            self.store.upsert(AddressRecord(address, Status.BANNED, [times[-1]]))
            log_line(2, f"evaluate({address}) exceeded ban threshold")
        elif trimmed:
            self.store.upsert(AddressRecord(address, Status.TRACKED, times))
        else:
            log_line(2, f"evaluate({address}) does not exceed threshold, skipping")
        return banned
