from __future__ import annotations

import os
from pathlib import Path


def config_dir() -> Path:
    """Cartella config di sistema (override: BANWARDEN_CONFIG_DIR)."""
    return Path(os.environ.get("BANWARDEN_CONFIG_DIR", "/etc/banwarden"))


def config_file() -> Path:
    return config_dir() / "config.yaml"


def snapshot_file(prefix: str, compressed: bool = False) -> Path:
    """`/etc/banwarden/state` -> `/etc/banwarden/state.bwdb` (or `.bwdbz`)."""
    return Path(f"{prefix}.bwdbz" if compressed else f"{prefix}.bwdb")


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
