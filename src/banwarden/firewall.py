"""
Firewall reconciliation.

The reconciler only speaks in terms of chains, rule handles and two kinds of
rules it owns (a jump into the managed chain, a per-address block rule). The
backend translates that to a concrete tool: `NftBackend` shells out to `nft`,
`MemoryBackend` keeps everything in a dict (dry-run / tests).

Every operation re-reads the current state before acting, so a run that died
half way is completed by the next ban/unban/wipe instead of being rolled back.
"""

from __future__ import annotations

import re
import shutil
import subprocess
from dataclasses import dataclass
from ipaddress import ip_network
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from banwarden.log import log_line


class FirewallError(RuntimeError):
    """A firewall command failed (tool missing, bad rule, chain absent...)."""

    def __init__(self, cmd: Sequence[str], detail: str = "") -> None:
        self.cmd = list(cmd)
        self.detail = (detail or "").strip()
        super().__init__(f"{' '.join(self.cmd)}: {self.detail or 'failed'}")


def address_family(address: str) -> int:
    """4 or 6. CIDR networks are accepted (host bits are ignored)."""
    try:
        return ip_network(address, strict=False).version
    except ValueError:
        return 6 if ":" in address else 4


@dataclass(frozen=True)
class RuleSpec:
    kind: str  # "jump" | "block"
    target: str  # jump: chain name, block: address
    action: str = ""
    family: int = 4

    @classmethod
    def jump(cls, chain: str) -> "RuleSpec":
        return cls(kind="jump", target=chain)

    @classmethod
    def block(cls, address: str, action: str) -> "RuleSpec":
        return cls(kind="block", target=address, action=action, family=address_family(address))


@dataclass(frozen=True)
class Rule:
    handle: int
    spec: Optional[RuleSpec]  # None = rule not written by us
    text: str = ""


class FirewallBackend:
    """Capability required by the reconciler. All methods raise FirewallError on failure."""

    def chain_exists(self, chain: str) -> bool:
        raise NotImplementedError

    def ensure_chain(self, chain: str) -> None:
        raise NotImplementedError

    def list_rules(self, chain: str) -> List[Rule]:
        raise NotImplementedError

    def insert_rule(
        self,
        chain: str,
        spec: RuleSpec,
        *,
        index: Optional[int] = None,
        after_handle: Optional[int] = None,
    ) -> None:
        """Append, insert before position `index`, or add right after `after_handle`."""
        raise NotImplementedError

    def delete_rule(self, chain: str, handle: int) -> None:
        raise NotImplementedError

    def flush_chain(self, chain: str) -> None:
        raise NotImplementedError

    def delete_chain(self, chain: str) -> None:
        raise NotImplementedError


# -------------------------
# nftables
# -------------------------
Runner = Callable[[List[str]], Tuple[int, str, str]]

_HANDLE_RE = re.compile(r"^\s*(?P<body>.*?)\s*# handle (?P<handle>\d+)\s*$")
_JUMP_RE = re.compile(r"^jump (?P<chain>\S+)$")
_BLOCK_RE = re.compile(r"^(?P<fam>ip6?) saddr (?P<addr>\S+) (?P<action>\S+)$")


def _run(cmd: List[str], timeout: float = 10.0) -> Tuple[int, str, str]:
    try:
        r = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        return r.returncode, (r.stdout or "").strip(), (r.stderr or "").strip()
    except (OSError, subprocess.TimeoutExpired) as e:
        return 127, "", f"{e!r}"


def parse_rule_line(line: str) -> Optional[Rule]:
    """One line of `nft -a list chain ...` -> Rule (None for headers/braces)."""
    m = _HANDLE_RE.match(line)
    if not m:
        return None
    body = m.group("body")
    if body.endswith("{"):
        # "chain input { # handle 1"
        return None

    handle = int(m.group("handle"))
    jm = _JUMP_RE.match(body)
    if jm:
        return Rule(handle, RuleSpec.jump(jm.group("chain")), body)
    bm = _BLOCK_RE.match(body)
    if bm:
        fam = 6 if bm.group("fam") == "ip6" else 4
        spec = RuleSpec("block", bm.group("addr"), bm.group("action"), fam)
        return Rule(handle, spec, body)
    return Rule(handle, None, body)


class NftBackend(FirewallBackend):
    def __init__(self, table: str = "inet fw4", runner: Optional[Runner] = None) -> None:
        self.table = table.split()
        self._runner = runner or _run

    @staticmethod
    def available() -> bool:
        return shutil.which("nft") is not None

    def _check(self, args: List[str]) -> str:
        cmd = ["nft", *args]
        rc, out, err = self._runner(cmd)
        if rc != 0:
            raise FirewallError(cmd, err)
        return out

    @staticmethod
    def _render(spec: RuleSpec) -> List[str]:
        if spec.kind == "jump":
            return ["jump", spec.target]
        return ["ip6" if spec.family == 6 else "ip", "saddr", spec.target, spec.action]

    def chain_exists(self, chain: str) -> bool:
        rc, _, _ = self._runner(["nft", "list", "chain", *self.table, chain])
        return rc == 0

    def ensure_chain(self, chain: str) -> None:
        self._check(["add", "chain", *self.table, chain])

    def list_rules(self, chain: str) -> List[Rule]:
        out = self._check(["-a", "list", "chain", *self.table, chain])
        rules: List[Rule] = []
        for ln in out.splitlines():
            r = parse_rule_line(ln)
            if r is not None:
                rules.append(r)
        return rules

    def insert_rule(self, chain, spec, *, index=None, after_handle=None) -> None:
        if index is not None:
            args = ["insert", "rule", *self.table, chain, "index", str(index)]
        elif after_handle is not None:
            args = ["add", "rule", *self.table, chain, "handle", str(after_handle)]
        else:
            args = ["add", "rule", *self.table, chain]
        self._check([*args, *self._render(spec)])

    def delete_rule(self, chain: str, handle: int) -> None:
        self._check(["delete", "rule", *self.table, chain, "handle", str(handle)])

    def flush_chain(self, chain: str) -> None:
        self._check(["flush", "chain", *self.table, chain])

    def delete_chain(self, chain: str) -> None:
        self._check(["delete", "chain", *self.table, chain])


# -------------------------
# in-memory (dry-run / tests)
# -------------------------
class MemoryBackend(FirewallBackend):
    def __init__(self, chains: Sequence[str] = ()) -> None:
        self.chains: Dict[str, List[Rule]] = {c: [] for c in chains}
        self._next_handle = 1

    def _rules(self, chain: str) -> List[Rule]:
        if chain not in self.chains:
            raise FirewallError(["list", chain], "No such file or directory")
        return self.chains[chain]

    def chain_exists(self, chain: str) -> bool:
        return chain in self.chains

    def ensure_chain(self, chain: str) -> None:
        self.chains.setdefault(chain, [])

    def list_rules(self, chain: str) -> List[Rule]:
        return list(self._rules(chain))

    def insert_rule(self, chain, spec, *, index=None, after_handle=None) -> None:
        rules = self._rules(chain)
        rule = Rule(self._next_handle, spec, spec.kind + " " + spec.target)
        self._next_handle += 1

        if index is not None:
            rules.insert(index, rule)
        elif after_handle is not None:
            handles = [r.handle for r in rules]
            if after_handle not in handles:
                raise FirewallError(["insert", chain, str(after_handle)], "No such file or directory")
            rules.insert(handles.index(after_handle) + 1, rule)
        else:
            rules.append(rule)

    def delete_rule(self, chain: str, handle: int) -> None:
        rules = self._rules(chain)
        for i, r in enumerate(rules):
            if r.handle == handle:
                del rules[i]
                return
        raise FirewallError(["delete", chain, str(handle)], "No such file or directory")

    def flush_chain(self, chain: str) -> None:
        self._rules(chain).clear()

    def delete_chain(self, chain: str) -> None:
        self._rules(chain)
        del self.chains[chain]


# -------------------------
# reconciler
# -------------------------
class FirewallReconciler:
    def __init__(
        self,
        backend: FirewallBackend,
        chain: str = "banwarden",
        hooks: Sequence[Tuple[str, int]] = (),
        action: str = "drop",
    ) -> None:
        self.backend = backend
        self.chain = chain
        self.hooks = tuple(hooks)
        self.action = action

    def _is_our_jump(self, rule: Rule) -> bool:
        return rule.spec is not None and rule.spec.kind == "jump" and rule.spec.target == self.chain

    def _block_rules(self, address: str) -> List[Rule]:
        addr = address.lower()
        return [
            r for r in self.backend.list_rules(self.chain)
            if r.spec is not None and r.spec.kind == "block" and r.spec.target.lower() == addr
        ]

    def ensure_hook(self, hook_chain: str, position: int) -> None:
        """
        position 0: right after the last jump already in hook_chain (or append)
        position k > 0: at rule index k-1 of hook_chain
        position < 0: hook disabled
        """
        if position < 0:
            return
        rules = self.backend.list_rules(hook_chain)
        if any(self._is_our_jump(r) for r in rules):
            return

        log_line(1, f"Inserting hook into firewall chain {hook_chain}")
        spec = RuleSpec.jump(self.chain)
        if position == 0:
            jumps = [r for r in rules if r.spec is not None and r.spec.kind == "jump"]
            if jumps:
                self.backend.insert_rule(hook_chain, spec, after_handle=jumps[-1].handle)
            else:
                self.backend.insert_rule(hook_chain, spec)
        elif position - 1 < len(rules):
            self.backend.insert_rule(hook_chain, spec, index=position - 1)
        else:
            self.backend.insert_rule(hook_chain, spec)

    def ban(self, address: str) -> bool:
        """Make sure `address` is blocked. False if the firewall could not be updated."""
        try:
            if not self.backend.chain_exists(self.chain):
                log_line(1, f"Creating firewall chain {self.chain}")
                self.backend.ensure_chain(self.chain)
        except FirewallError as e:
            log_line(0, f"Error: cannot create chain {self.chain}: {e}")
            return False

        for hook_chain, position in self.hooks:
            try:
                self.ensure_hook(hook_chain, position)
            except FirewallError as e:
                log_line(0, f"Error: cannot hook {self.chain} into {hook_chain}: {e}")

        try:
            existing = [r for r in self._block_rules(address) if r.spec.action == self.action]
            if existing:
                log_line(3, f"ban({address}) rule already present in chain {self.chain}")
                return True
            log_line(1, f"Inserting ban rule for {address} into chain {self.chain}")
            self.backend.insert_rule(self.chain, RuleSpec.block(address, self.action))
            return True
        except FirewallError as e:
            log_line(0, f"Error: ban rule for {address} not applied (retry on next sweep): {e}")
            return False

    def unban(self, address: str) -> bool:
        """Remove the block rule(s) for `address`; absent rule/chain counts as success."""
        try:
            if not self.backend.chain_exists(self.chain):
                log_line(3, f"unban({address}) chain {self.chain} not present")
                return True
            rules = self._block_rules(address)
        except FirewallError as e:
            log_line(0, f"Error: cannot list chain {self.chain}: {e}")
            return False

        if not rules:
            log_line(3, f"unban({address}) ban rule not present")
            return True

        ok = True
        for r in rules:
            log_line(1, f"Removing ban rule for {address} from chain {self.chain}")
            try:
                self.backend.delete_rule(self.chain, r.handle)
            except FirewallError as e:
                log_line(1, f"unban({address}) delete failed (already gone?): {e}")
                ok = False
        return ok

    def wipe_all(self) -> None:
        """Unhook the managed chain from every hook chain, then flush and delete it."""
        for hook_chain, position in self.hooks:
            if position < 0:
                continue
            try:
                rules = self.backend.list_rules(hook_chain)
            except FirewallError as e:
                log_line(3, f"wipe: hook chain {hook_chain} not readable: {e}")
                continue
            for r in rules:
                if not self._is_our_jump(r):
                    continue
                log_line(1, f"Removing hook from firewall chain {hook_chain}")
                try:
                    self.backend.delete_rule(hook_chain, r.handle)
                except FirewallError as e:
                    log_line(1, f"wipe: hook already gone from {hook_chain}: {e}")

        if not self.backend.chain_exists(self.chain):
            return
        log_line(1, f"Flushing and removing firewall chain {self.chain}")
        try:
            self.backend.flush_chain(self.chain)
            self.backend.delete_chain(self.chain)
        except FirewallError as e:
            log_line(1, f"wipe: chain {self.chain} already gone: {e}")
