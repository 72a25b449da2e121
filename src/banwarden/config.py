from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from banwarden import paths


class ConfigError(ValueError):
    """Invalid configuration value (fatal at startup)."""


_BIND_RE = re.compile(r"^(\d+[wdhms]?)+$")
_BIND_PART_RE = re.compile(r"(\d+)([wdhms]?)")
_UNIT = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1, "": 1}


def parse_duration(value: Any) -> int:
    """
    Parse raw seconds or compound durations like 1w5d3h1m8s -> seconds.
    A bare number inside a compound string counts as seconds (1h30 == 3630).
    """
    if isinstance(value, bool):
        raise ConfigError(f"Invalid time specified ({value!r})")
    if isinstance(value, int):
        if value < 0:
            raise ConfigError(f"Invalid time specified ({value})")
        return value

    s = str(value).strip().lower()
    if not s or not _BIND_RE.match(s):
        raise ConfigError(f"Invalid time specified ({value!r})")
    return sum(int(n) * _UNIT[u] for n, u in _BIND_PART_RE.findall(s))


def parse_hooks(value: Any) -> Tuple[Tuple[str, int], ...]:
    """
    "input_wan_rule:1 forwarding_wan_rule:0" (or a list of "chain:pos") ->
    (("input_wan_rule", 1), ("forwarding_wan_rule", 0)).
    Missing position means 0 (after existing jumps).
    """
    if value is None:
        return ()
    items = value.split() if isinstance(value, str) else [str(v) for v in value]

    out: List[Tuple[str, int]] = []
    for item in items:
        chain, sep, pos = item.strip().rpartition(":")
        if not sep:
            chain, pos = pos, "0"
        if not chain:
            raise ConfigError(f"Invalid hook chain ({item!r})")
        try:
            out.append((chain, int(pos)))
        except ValueError:
            raise ConfigError(f"Invalid hook position ({item!r})") from None
    return tuple(out)


@dataclass(frozen=True)
class WardenConfig:
    # Soglie: attempt_count tentativi entro attempt_period -> ban per ban_length
    attempt_count: int = 10
    attempt_period: int = 12 * 3600
    ban_length: int = 7 * 86400

    # -1 = never write durable state, 0 = only on forced flush (SIGHUP / exit)
    durable_write_period: int = -1
    durable_prefix: str = "/etc/banwarden/state"
    volatile_prefix: str = "/tmp/banwarden"
    compress_durable: bool = False

    fw_table: str = "inet fw4"
    fw_chain: str = "banwarden"
    fw_hooks: Tuple[Tuple[str, int], ...] = (("input_wan_rule", 1), ("forwarding_wan_rule", 1))
    fw_action: str = "drop"

    log_level: int = 1
    log_facility: str = "authpriv.notice"

    follow_check_interval: int = 30 * 60
    source_command: str = "logread"
    # run mode when no command is given: follow, entire, today, wipe or "interval <duration>"
    default_mode: str = "entire"

    whitelist: Tuple[str, ...] = field(default_factory=tuple)

    def durable_path(self) -> Path:
        return paths.snapshot_file(self.durable_prefix, compressed=self.compress_durable)

    def volatile_path(self) -> Path:
        return paths.snapshot_file(self.volatile_prefix)

    def with_overrides(self, **kwargs: Any) -> "WardenConfig":
        """Apply CLI overrides (None = keep config value), re-validating durations."""
        raw = {k: v for k, v in kwargs.items() if v is not None}
        for key in ("attempt_period", "ban_length", "follow_check_interval"):
            if key in raw:
                raw[key] = parse_duration(raw[key])
        if "durable_write_period" in raw:
            raw["durable_write_period"] = _parse_write_period(raw["durable_write_period"])
        if "fw_hooks" in raw:
            raw["fw_hooks"] = parse_hooks(raw["fw_hooks"])
        cfg = replace(self, **raw)
        _validate(cfg)
        return cfg


DEFAULT_CONFIG = WardenConfig()


def _parse_write_period(value: Any) -> int:
    if str(value).strip() == "-1":
        return -1
    return parse_duration(value)


MODES = ("follow", "entire", "today", "interval", "wipe")


def split_mode(value: str) -> Tuple[str, Optional[int]]:
    """"entire" -> ("entire", None), "interval 6h" -> ("interval", 21600)."""
    mode, _, arg = str(value).strip().partition(" ")
    if mode not in MODES:
        raise ConfigError(f"Invalid mode ({value!r}), expected one of: {', '.join(MODES)}")
    if mode == "interval":
        return mode, parse_duration(arg.strip() or "24h")
    if arg.strip():
        raise ConfigError(f"Mode {mode} takes no argument ({value!r})")
    return mode, None


def _validate(cfg: WardenConfig) -> None:
    if cfg.attempt_count < 1:
        raise ConfigError(f"attempt_count must be >= 1 (got {cfg.attempt_count})")
    if not cfg.fw_chain:
        raise ConfigError("firewall.chain must not be empty")
    split_mode(cfg.default_mode)


def _to_dict(cfg: WardenConfig) -> Dict[str, Any]:
    return {
        "attempt_count": cfg.attempt_count,
        "attempt_period": "12h",
        "ban_length": "1w",
        "durable_write_period": cfg.durable_write_period,
        "durable_prefix": cfg.durable_prefix,
        "volatile_prefix": cfg.volatile_prefix,
        "compress_durable": cfg.compress_durable,
        "firewall": {
            "table": cfg.fw_table,
            "chain": cfg.fw_chain,
            "hooks": [f"{c}:{p}" for c, p in cfg.fw_hooks],
            "action": cfg.fw_action,
        },
        "log": {
            "level": cfg.log_level,
            "facility": cfg.log_facility,
        },
        "follow": {"check_interval": "30m"},
        "source": {"command": cfg.source_command},
        "default_mode": cfg.default_mode,
        "whitelist": list(cfg.whitelist),
    }


def ensure_config_exists(path: Optional[Path] = None) -> None:
    """Crea config.yaml con i default se non esiste (silenzioso se non scrivibile)."""
    cfg_path = path or paths.config_file()
    if cfg_path.exists():
        return
    try:
        paths.ensure_parent(cfg_path)
        cfg_path.write_text(
            yaml.safe_dump(_to_dict(DEFAULT_CONFIG), sort_keys=False),
            encoding="utf-8",
        )
    except OSError:
        return


def from_dict(raw: Dict[str, Any]) -> WardenConfig:
    d = DEFAULT_CONFIG
    fw = raw.get("firewall", {}) or {}
    lg = raw.get("log", {}) or {}
    follow = raw.get("follow", {}) or {}
    source = raw.get("source", {}) or {}

    try:
        attempt_count = int(raw.get("attempt_count", d.attempt_count))
        log_level = int(lg.get("level", d.log_level))
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e)) from None

    cfg = WardenConfig(
        attempt_count=attempt_count,
        attempt_period=parse_duration(raw.get("attempt_period", d.attempt_period)),
        ban_length=parse_duration(raw.get("ban_length", d.ban_length)),
        durable_write_period=_parse_write_period(raw.get("durable_write_period", d.durable_write_period)),
        durable_prefix=str(raw.get("durable_prefix", d.durable_prefix)),
        volatile_prefix=str(raw.get("volatile_prefix", d.volatile_prefix)),
        compress_durable=bool(raw.get("compress_durable", d.compress_durable)),
        fw_table=str(fw.get("table", d.fw_table)),
        fw_chain=str(fw.get("chain", d.fw_chain)),
        fw_hooks=parse_hooks(fw.get("hooks", [f"{c}:{p}" for c, p in d.fw_hooks])),
        fw_action=str(fw.get("action", d.fw_action)),
        log_level=log_level,
        log_facility=str(lg.get("facility", d.log_facility)),
        follow_check_interval=parse_duration(follow.get("check_interval", d.follow_check_interval)),
        source_command=str(source.get("command", d.source_command)),
        default_mode=str(raw.get("default_mode", d.default_mode)).strip(),
        whitelist=tuple(str(x).strip() for x in (raw.get("whitelist") or []) if str(x).strip()),
    )
    _validate(cfg)
    return cfg


def load_config(path: Optional[Path] = None) -> WardenConfig:
    """Carica config.yaml e applica fallback sui default."""
    cfg_path = path or paths.config_file()
    ensure_config_exists(cfg_path)
    if not cfg_path.exists():
        return DEFAULT_CONFIG

    try:
        raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"{cfg_path}: {e}") from None
    if not isinstance(raw, dict):
        raise ConfigError(f"{cfg_path}: expected a mapping at top level")
    return from_dict(raw)
