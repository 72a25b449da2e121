import pytest

from banwarden.firewall import (
    FirewallError,
    FirewallReconciler,
    MemoryBackend,
    NftBackend,
    RuleSpec,
    address_family,
    parse_rule_line,
)


@pytest.fixture
def rec(backend):
    return FirewallReconciler(
        backend,
        chain="banwarden",
        hooks=[("input_wan_rule", 1), ("forwarding_wan_rule", 0)],
        action="drop",
    )


def _blocks(backend, chain="banwarden"):
    return [r.spec.target for r in backend.chains.get(chain, []) if r.spec.kind == "block"]


def test_ban_creates_chain_hooks_and_rule(rec, backend):
    assert rec.ban("1.2.3.4") is True
    assert backend.chain_exists("banwarden")
    assert _blocks(backend) == ["1.2.3.4"]
    for hook in ("input_wan_rule", "forwarding_wan_rule"):
        jumps = [r for r in backend.chains[hook] if r.spec.kind == "jump"]
        assert [j.spec.target for j in jumps] == ["banwarden"]


def test_ban_twice_is_idempotent(rec, backend):
    rec.ban("1.2.3.4")
    rec.ban("1.2.3.4")
    assert _blocks(backend) == ["1.2.3.4"]
    assert len(backend.chains["input_wan_rule"]) == 1


def test_ban_ipv6_family(rec, backend):
    rec.ban("2001:db8::2")
    rule = backend.chains["banwarden"][0]
    assert rule.spec.family == 6
    assert rule.spec.action == "drop"


def test_hook_position_zero_goes_after_last_jump(backend):
    backend.insert_rule("forwarding_wan_rule", RuleSpec.jump("other"))
    backend.insert_rule("forwarding_wan_rule", RuleSpec.block("9.9.9.9", "accept"))
    backend.insert_rule("forwarding_wan_rule", RuleSpec.jump("third"))
    backend.insert_rule("forwarding_wan_rule", RuleSpec.block("8.8.8.8", "accept"))

    FirewallReconciler(backend, "banwarden", [("forwarding_wan_rule", 0)]).ban("1.2.3.4")

    targets = [r.spec.target for r in backend.chains["forwarding_wan_rule"]]
    assert targets == ["other", "9.9.9.9", "third", "banwarden", "8.8.8.8"]


def test_hook_position_index(backend):
    for t in ("a", "b", "c"):
        backend.insert_rule("input_wan_rule", RuleSpec.jump(t))

    FirewallReconciler(backend, "banwarden", [("input_wan_rule", 2)]).ban("1.2.3.4")

    targets = [r.spec.target for r in backend.chains["input_wan_rule"]]
    assert targets == ["a", "banwarden", "b", "c"]


def test_hook_position_past_end_appends(backend):
    backend.insert_rule("input_wan_rule", RuleSpec.jump("a"))
    FirewallReconciler(backend, "banwarden", [("input_wan_rule", 9)]).ban("1.2.3.4")
    assert [r.spec.target for r in backend.chains["input_wan_rule"]] == ["a", "banwarden"]


def test_negative_position_disables_hook(backend):
    FirewallReconciler(backend, "banwarden", [("input_wan_rule", -1)]).ban("1.2.3.4")
    assert backend.chains["input_wan_rule"] == []


def test_missing_hook_chain_does_not_block_ban(backend):
    r = FirewallReconciler(backend, "banwarden", [("no_such_chain", 1)])
    assert r.ban("1.2.3.4") is True
    assert _blocks(backend) == ["1.2.3.4"]


def test_unban_removes_rule_and_is_noop_when_absent(rec, backend):
    rec.ban("1.2.3.4")
    rec.ban("5.6.7.8")
    assert rec.unban("1.2.3.4") is True
    assert _blocks(backend) == ["5.6.7.8"]
    assert rec.unban("1.2.3.4") is True
    assert rec.unban("7.7.7.7") is True


def test_unban_without_chain(rec):
    assert rec.unban("1.2.3.4") is True


def test_wipe_all_removes_hooks_and_chain(rec, backend):
    backend.insert_rule("input_wan_rule", RuleSpec.jump("other"))
    rec.ban("1.2.3.4")
    rec.wipe_all()
    assert not backend.chain_exists("banwarden")
    assert [r.spec.target for r in backend.chains["input_wan_rule"]] == ["other"]
    assert backend.chains["forwarding_wan_rule"] == []
    # second wipe finds nothing to do
    rec.wipe_all()


class _FailingBackend(MemoryBackend):
    def insert_rule(self, chain, spec, **kw):
        raise FirewallError(["nft", "add"], "Operation not permitted")


def test_ban_failure_is_reported_not_raised():
    r = FirewallReconciler(_FailingBackend(), "banwarden", [])
    assert r.ban("1.2.3.4") is False


def test_address_family():
    assert address_family("1.2.3.4") == 4
    assert address_family("10.0.0.0/8") == 4
    assert address_family("::1") == 6


# -------------------------
# nft output parsing / commands
# -------------------------
NFT_CHAIN = """table inet fw4 {
\tchain banwarden { # handle 40
\t\tip saddr 1.2.3.4 drop # handle 41
\t\tip6 saddr 2001:db8::2 drop # handle 42
\t\tcounter packets 0 bytes 0 # handle 43
\t}
}"""

NFT_HOOK = """table inet fw4 {
\tchain input_wan_rule { # handle 5
\t\tjump other_chain # handle 6
\t\ttcp dport 22 accept # handle 7
\t}
}"""


class FakeNft:
    def __init__(self, outputs=None):
        self.calls = []
        self.outputs = outputs or {}

    def __call__(self, cmd):
        self.calls.append(cmd)
        key = " ".join(cmd[1:])
        for prefix, result in self.outputs.items():
            if key.startswith(prefix):
                return result
        return 0, "", ""


def test_parse_rule_line():
    assert parse_rule_line("\tchain banwarden { # handle 40") is None
    r = parse_rule_line("\t\tip saddr 1.2.3.4 drop # handle 41")
    assert r.handle == 41 and r.spec == RuleSpec("block", "1.2.3.4", "drop", 4)
    r = parse_rule_line("\t\tjump banwarden # handle 9")
    assert r.spec == RuleSpec.jump("banwarden")
    assert parse_rule_line("\t\ttcp dport 22 accept # handle 7").spec is None
    assert parse_rule_line("}") is None


def test_nft_list_rules():
    nft = NftBackend(runner=FakeNft({"-a list chain inet fw4 banwarden": (0, NFT_CHAIN, "")}))
    rules = nft.list_rules("banwarden")
    assert [r.handle for r in rules] == [41, 42, 43]
    assert rules[1].spec.family == 6


def test_nft_commands():
    fake = FakeNft()
    nft = NftBackend(runner=fake)
    nft.insert_rule("banwarden", RuleSpec.block("2001:db8::2", "drop"))
    nft.insert_rule("input_wan_rule", RuleSpec.jump("banwarden"), index=0)
    nft.insert_rule("input_wan_rule", RuleSpec.jump("banwarden"), after_handle=6)
    nft.delete_rule("banwarden", 41)
    assert fake.calls == [
        ["nft", "add", "rule", "inet", "fw4", "banwarden", "ip6", "saddr", "2001:db8::2", "drop"],
        ["nft", "insert", "rule", "inet", "fw4", "input_wan_rule", "index", "0", "jump", "banwarden"],
        ["nft", "add", "rule", "inet", "fw4", "input_wan_rule", "handle", "6", "jump", "banwarden"],
        ["nft", "delete", "rule", "inet", "fw4", "banwarden", "handle", "41"],
    ]


def test_nft_failure_raises():
    nft = NftBackend(runner=FakeNft({"flush": (1, "", "No such file or directory")}))
    with pytest.raises(FirewallError):
        nft.flush_chain("banwarden")


def test_reconciler_over_nft_unban_by_handle():
    fake = FakeNft({
        "list chain inet fw4 banwarden": (0, "", ""),
        "-a list chain inet fw4 banwarden": (0, NFT_CHAIN, ""),
    })
    FirewallReconciler(NftBackend(runner=fake), "banwarden").unban("2001:db8::2")
    assert fake.calls[-1] == ["nft", "delete", "rule", "inet", "fw4", "banwarden", "handle", "42"]


def test_reconciler_over_nft_hooks_after_last_jump():
    fake = FakeNft({
        "list chain inet fw4 banwarden": (0, "", ""),
        "-a list chain inet fw4 input_wan_rule": (0, NFT_HOOK, ""),
        "-a list chain inet fw4 banwarden": (0, NFT_CHAIN, ""),
    })
    FirewallReconciler(NftBackend(runner=fake), "banwarden", [("input_wan_rule", 0)]).ban("1.2.3.4")
    assert ["nft", "add", "rule", "inet", "fw4", "input_wan_rule", "handle", "6", "jump", "banwarden"] in fake.calls
    # 1.2.3.4 already blocked: no new rule in the managed chain
    assert not any(c[:6] == ["nft", "add", "rule", "inet", "fw4", "banwarden"] for c in fake.calls)
