"""Gate configuration.

Defaults cover the normal promotion run; a YAML file can override any key:

    near_duplicate_threshold: 0.9
    cross_entry_near_duplicates: true
    min_coverage: 0.25
    scenario_tokens:
      bakery: [bread, roll, brötchen]
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Raised for unreadable or invalid configuration files."""


@dataclass
class GateConfig:
    near_duplicate_threshold: float = 0.92
    cross_entry_near_duplicates: bool = False
    min_coverage: float = 0.2       # below -> LowCoverage warning
    min_diversity: float = 0.3      # below -> LowDiversity warning
    analytics_authoritative: bool = True
    max_parse_errors: int = 50      # above -> ParseStorm, load aborted
    max_workers: int = 4
    scenario_tokens: Optional[dict] = None  # replaces entries of the shipped dictionaries

    def __post_init__(self):
        for name in ("near_duplicate_threshold", "min_coverage", "min_diversity"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number, got {value!r}")
        for name in ("cross_entry_near_duplicates", "analytics_authoritative"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(f"{name} must be true or false, got {getattr(self, name)!r}")
        for name in ("max_parse_errors", "max_workers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")

        if not 0.0 < self.near_duplicate_threshold <= 1.0:
            raise ConfigError(
                f"near_duplicate_threshold must be in (0, 1], got {self.near_duplicate_threshold}")
        for name in ("min_coverage", "min_diversity"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be in [0, 1], got {value}")
        if self.max_parse_errors < 0:
            raise ConfigError("max_parse_errors must be >= 0")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be >= 1")
        if self.scenario_tokens is not None:
            if not isinstance(self.scenario_tokens, dict):
                raise ConfigError("scenario_tokens must be a mapping of scenario -> token list")
            for scenario, tokens in self.scenario_tokens.items():
                if not isinstance(tokens, list) or not all(isinstance(t, str) for t in tokens):
                    raise ConfigError(f"scenario_tokens.{scenario} must be a list of strings")


def config_from_dict(data: dict) -> GateConfig:
    known = {f.name for f in fields(GateConfig)}
    unknown = sorted(str(k) for k in set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
    return GateConfig(**data)


def load_config(path) -> GateConfig:
    """Read a YAML config file. An empty file yields the defaults."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {p} is not valid YAML: {e}") from e
    if data is None:
        return GateConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {p} must contain a mapping at the top level")
    return config_from_dict(data)
