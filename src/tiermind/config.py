"""Engine configuration. Defaults first, TIERMIND_* environment overrides second."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields

ENV_PREFIX = "TIERMIND_"


def _int_env(name: str, default: int) -> int:
    try:
        raw = (os.getenv(name) or "").strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


def _float_env(name: str, default: float) -> float:
    try:
        raw = (os.getenv(name) or "").strip()
        return float(raw) if raw else float(default)
    except ValueError:
        return float(default)


def _str_env(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


@dataclass
class EngineConfig:
    anchor_id: str = "chris"

    # Foreign arena
    foreign_capacity: int = 100
    foreign_max_age: float = 30 * 60  # 30 minutos

    # Umbrales de resolución
    echo_threshold: float = 0.3
    foreign_threshold: float = 0.3
    cluster_threshold: float = 0.6
    cluster_quorum: int = 2  # peers, sin contar el propio
    cluster_delay: float = 0.1

    # Límites por identidad
    pattern_cap: int = 10
    trust_link_cap: int = 10
    trust_bump: float = 0.1
    tone_baseline_cap: int = 50
    trust_half_life: float = 30 * 24 * 3600
    trust_death_threshold: float = 0.01

    # Cache
    profile_cache_size: int = 500
    similarity_cache_size: int = 1000
    context_cache_size: int = 200
    trust_cache_size: int = 200
    default_ttl: float = 15 * 60
    foreign_ttl: float = 60.0

    # Scheduler
    cleanup_interval: float = 120.0
    maintenance_interval: float = 300.0
    session_timeout: float = 60 * 60

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> EngineConfig:
        """Build a config where every field may be overridden by ``<PREFIX><FIELD>``."""
        defaults = cls()
        parsers = {"int": _int_env, "float": _float_env, "str": _str_env}
        values = {}
        for f in fields(cls):
            # f.type es un string por el `from __future__ import annotations`
            parse = parsers[str(f.type)]
            values[f.name] = parse(prefix + f.name.upper(), getattr(defaults, f.name))
        return cls(**values)
