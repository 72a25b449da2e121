"""
Snapshot line format.

One record per line:

    bw_1_2_3_4=-1,1452332500             (whitelisted address or network)
    bw_1_2_3_4=0,1452332535,1452332536   (tracked, not banned)
    bw_1_2_3_4=1,1452332535              (banned, time = effective ban start)

In the key, "." becomes "_", ":" becomes "i" and the CIDR "/" becomes "m",
so 10.0.1.0/24 -> bw_10_0_1_0m24 and 2001:db8::2 -> bw_2001idb8ii2.
"""

from __future__ import annotations

import gzip
import re
from typing import Iterable, List, Optional

from banwarden.log import log_line
from banwarden.records import AddressRecord, Status, merge_times

PREFIX = "bw_"

_LINE_RE = re.compile(r"^bw_(?P<key>[0-9a-fA-F_im]+)=(?P<value>-?[01](?:,\d+)*)$")
_TO_KEY = str.maketrans({".": "_", ":": "i", "/": "m"})
_FROM_KEY = str.maketrans({"_": ".", "i": ":", "m": "/"})


def address_to_key(address: str) -> str:
    return PREFIX + address.lower().translate(_TO_KEY)


def key_to_address(key: str) -> str:
    if key.startswith(PREFIX):
        key = key[len(PREFIX):]
    return key.translate(_FROM_KEY)


def encode_record(rec: AddressRecord) -> str:
    values = [str(int(rec.status))] + [str(t) for t in rec.timestamps]
    return f"{address_to_key(rec.address)}={','.join(values)}"


def decode_line(line: str) -> Optional[AddressRecord]:
    """Parse one snapshot line. Returns None (and logs) for malformed lines."""
    line = line.strip().replace("'", "")
    if not line or line.startswith("#"):
        return None

    m = _LINE_RE.match(line)
    if not m:
        log_line(1, f"snapshot: skipping malformed line ({line[:120]})")
        return None

    parts = m.group("value").split(",")
    status = Status(int(parts[0]))
    times = merge_times([], (int(t) for t in parts[1:]))

    if status == Status.BANNED:
        if not times:
            log_line(1, f"snapshot: banned record without ban time ({line[:120]})")
            return None
        times = times[-1:]
    elif not times:
        if status == Status.TRACKED:
            log_line(1, f"snapshot: tracked record without attempts ({line[:120]})")
            return None
        # whitelist entries written by hand may omit the time
        times = [0]

    return AddressRecord(key_to_address(m.group("key")), status, times)


def dumps(records: Iterable[AddressRecord], compress: bool = False) -> bytes:
    """Serialize records, sorted by key so identical states give identical bytes."""
    lines = sorted(encode_record(r) for r in records)
    data = "".join(ln + "\n" for ln in lines).encode("utf-8")
    if compress:
        # mtime=0 keeps the gzip header stable across writes
        return gzip.compress(data, mtime=0)
    return data


def loads(data: bytes, compressed: bool = False) -> List[AddressRecord]:
    if compressed:
        data = gzip.decompress(data)
    out: List[AddressRecord] = []
    for line in data.decode("utf-8", errors="replace").splitlines():
        rec = decode_line(line)
        if rec is not None:
            out.append(rec)
    return out
