"""
cairn.config — Global config management.

~/.cairn/config.yaml:

    state_dir: ~/.cairn/state
    provider: local
    region: eu-west-1
    max_workers: 8
    node_timeout: 300
    on_failure: keep

Resolution priority, per setting:
    CLI flag > CAIRN_* env var > config file > default

CAIRN_HOME relocates the whole ~/.cairn directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from cairn.errors import ConfigError


def cairn_home() -> Path:
    env_home = os.environ.get("CAIRN_HOME", "").strip()
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".cairn"


ENV_VARS = {
    "state_dir": "CAIRN_STATE_DIR",
    "provider": "CAIRN_PROVIDER",
    "region": "CAIRN_REGION",
}


@dataclass
class CairnConfig:
    """Global cairn config."""
    state_dir: str | None = None
    provider: str = "local"
    region: str = "us-east-1"
    max_workers: int = 4
    node_timeout: float | None = None
    on_failure: str = "keep"

    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return cairn_home() / "state"

    def provider_path(self) -> Path:
        """Where the local provider keeps its resources."""
        return self.state_path() / "provider" / f"{self.provider}.yaml"


def config_path() -> Path:
    return cairn_home() / "config.yaml"


def load_config(path: str | Path | None = None) -> CairnConfig:
    """Read the config file and apply CAIRN_* environment overrides."""
    cp = Path(path) if path is not None else config_path()
    data: dict[str, Any] = {}
    if cp.exists():
        with open(cp) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {cp}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Expected YAML mapping in {cp}")

    known = {f.name for f in fields(CairnConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys in {cp}: {unknown}")

    cfg = CairnConfig(**data)

    for attr, env_name in ENV_VARS.items():
        value = os.environ.get(env_name, "").strip()
        if value:
            setattr(cfg, attr, value)

    _validate(cfg, cp)
    return cfg


def save_config(cfg: CairnConfig, path: str | Path | None = None) -> None:
    """Write the config file, omitting defaults."""
    cp = Path(path) if path is not None else config_path()
    cp.parent.mkdir(parents=True, exist_ok=True)

    default = CairnConfig()
    data: dict[str, Any] = {}
    for f in fields(CairnConfig):
        value = getattr(cfg, f.name)
        if value != getattr(default, f.name):
            data[f.name] = value

    with open(cp, "w") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)


def _validate(cfg: CairnConfig, source: Path) -> None:
    try:
        cfg.max_workers = int(cfg.max_workers)
        if cfg.node_timeout is not None:
            cfg.node_timeout = float(cfg.node_timeout)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid number in {source}: {e}") from e
    if cfg.max_workers < 1:
        raise ConfigError(f"max_workers must be at least 1 (in {source})")
    if cfg.on_failure not in ("keep", "rollback"):
        raise ConfigError(
            f"on_failure must be 'keep' or 'rollback', got '{cfg.on_failure}' (in {source})"
        )
