"""
cairn.template.values — Parameter override sources.

Override precedence (low to high):
  template defaults → --param-file a.yaml → --param-file b.yaml → --param k=v

Parameter files are flat YAML mappings:

    VpcCidr: 10.1.0.0/16
    InstanceType: t3.micro
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_param_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML parameter file."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Parameter file not found: {p}")
    with open(p) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected YAML mapping in {p}")
    return data


def parse_param_args(param_args: list[str]) -> dict[str, str]:
    """Convert --param key=value arguments to a dict.

    >>> parse_param_args(["VpcCidr=10.0.0.0/16", "Env=prod"])
    {'VpcCidr': '10.0.0.0/16', 'Env': 'prod'}
    """
    result: dict[str, str] = {}
    for arg in param_args:
        if "=" not in arg:
            raise ValueError(f"Invalid --param format: '{arg}' (expected key=value)")
        key, value = arg.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid --param format: '{arg}' (empty key)")
        result[key] = value
    return result


def merge_param_sources(
    param_files: list[str | Path] | None = None,
    param_args: list[str] | None = None,
) -> dict[str, Any]:
    """Merge all override sources, later ones winning."""
    result: dict[str, Any] = {}
    for pf in param_files or []:
        result.update(load_param_file(pf))
    if param_args:
        result.update(parse_param_args(param_args))
    return result
