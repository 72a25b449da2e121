import pytest

from banwarden.config import (
    DEFAULT_CONFIG,
    ConfigError,
    load_config,
    parse_duration,
    parse_hooks,
    split_mode,
)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("30", 30),
        (45, 45),
        ("10m", 600),
        ("12h", 43200),
        ("1w", 604800),
        ("1w5d3h1m8s", 604800 + 5 * 86400 + 3 * 3600 + 60 + 8),
        ("1h30", 3630),
        ("0", 0),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "abc", "10x", "-5", "1.5h", -1, True])
def test_parse_duration_invalid(value):
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_parse_hooks():
    assert parse_hooks("input_wan_rule:1 forwarding_wan_rule:0") == (
        ("input_wan_rule", 1),
        ("forwarding_wan_rule", 0),
    )
    assert parse_hooks(["input:-1", "forward"]) == (("input", -1), ("forward", 0))
    with pytest.raises(ConfigError):
        parse_hooks("input:first")


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "etc" / "config.yaml"
    cfg = load_config(path)
    assert path.exists()
    assert cfg == DEFAULT_CONFIG
    # reading back the generated file gives the same config
    assert load_config(path) == DEFAULT_CONFIG


def test_yaml_values(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "attempt_count: 5\n"
        "attempt_period: 10m\n"
        "ban_length: 2d\n"
        "durable_write_period: 1h\n"
        "firewall:\n"
        "  chain: bans\n"
        "  hooks: [input:0]\n"
        "whitelist: [192.168.1.1]\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.attempt_count == 5
    assert cfg.attempt_period == 600
    assert cfg.ban_length == 2 * 86400
    assert cfg.durable_write_period == 3600
    assert cfg.fw_chain == "bans"
    assert cfg.fw_hooks == (("input", 0),)
    assert cfg.whitelist == ("192.168.1.1",)


def test_invalid_duration_in_file_is_fatal(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("ban_length: forever\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_default_mode(tmp_path):
    assert DEFAULT_CONFIG.default_mode == "entire"
    assert split_mode("interval 6h") == ("interval", 21600)
    assert split_mode("interval") == ("interval", 86400)
    assert split_mode("follow") == ("follow", None)

    path = tmp_path / "config.yaml"
    path.write_text("default_mode: today\n", encoding="utf-8")
    assert load_config(path).default_mode == "today"

    for bad in ("sometimes", "entire 6h", "interval soon"):
        path.write_text(f"default_mode: {bad}\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)


def test_overrides():
    cfg = DEFAULT_CONFIG.with_overrides(
        attempt_count=3,
        attempt_period="1m",
        durable_write_period="-1",
        fw_hooks="input_wan_rule:0",
        fw_chain=None,
    )
    assert cfg.attempt_count == 3
    assert cfg.attempt_period == 60
    assert cfg.durable_write_period == -1
    assert cfg.fw_hooks == (("input_wan_rule", 0),)
    assert cfg.fw_chain == DEFAULT_CONFIG.fw_chain
    with pytest.raises(ConfigError):
        DEFAULT_CONFIG.with_overrides(attempt_count=0)


def test_snapshot_paths():
    cfg = DEFAULT_CONFIG.with_overrides(compress_durable=True)
    assert str(cfg.durable_path()) == "/etc/banwarden/state.bwdbz"
    assert str(cfg.volatile_path()) == "/tmp/banwarden.bwdb"
