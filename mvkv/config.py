"""
Startup configuration read from environment variables.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from mvkv.engine.backup import DEFAULT_RESTORE_BATCH_SIZE
from mvkv.engine.engine import Engine

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


@dataclass(frozen=True)
class Settings:
    """
    Server and engine settings, fixed for the life of the process.

    Every field can be set through the environment variable named in
    from_env(); invalid values raise ValueError at startup.
    """

    data_dir: str = "./data/mvkv"
    host: str = "0.0.0.0"
    port: int = 8080
    memtable_threshold: int = Engine.DEFAULT_MEMTABLE_THRESHOLD
    compaction_threshold: int = Engine.DEFAULT_COMPACTION_THRESHOLD
    compaction_interval_s: float = Engine.DEFAULT_COMPACTION_INTERVAL_S
    compaction_enabled: bool = True
    history_retention: int = Engine.DEFAULT_HISTORY_RETENTION
    write_policy: str = "queue"
    detect_conflicts: bool = True
    restore_batch_size: int = DEFAULT_RESTORE_BATCH_SIZE
    max_body_bytes: int = 10 * 1024 * 1024
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.data_dir:
            raise ValueError("data_dir cannot be empty")
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be in 1-65535, got {self.port}")
        if self.memtable_threshold <= 0:
            raise ValueError(f"memtable_threshold must be positive, got {self.memtable_threshold}")
        if self.compaction_threshold < 1:
            raise ValueError(f"compaction_threshold must be >= 1, got {self.compaction_threshold}")
        if self.compaction_interval_s <= 0:
            raise ValueError(
                f"compaction_interval_s must be positive, got {self.compaction_interval_s}"
            )
        if self.history_retention < 0:
            raise ValueError(f"history_retention must be >= 0, got {self.history_retention}")
        if self.write_policy not in Engine.WRITE_POLICIES:
            raise ValueError(
                f"write_policy must be one of {Engine.WRITE_POLICIES}, got {self.write_policy!r}"
            )
        if self.restore_batch_size <= 0:
            raise ValueError(f"restore_batch_size must be positive, got {self.restore_batch_size}")
        if self.max_body_bytes <= 0:
            raise ValueError(f"max_body_bytes must be positive, got {self.max_body_bytes}")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Unknown log level {self.log_level!r}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from `environ` (defaults to os.environ)."""
        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            data_dir=env.get("MVKV_DATA_DIR", defaults.data_dir),
            host=env.get("MVKV_HOST", defaults.host),
            port=_int(env, "MVKV_PORT", defaults.port),
            memtable_threshold=_int(env, "MVKV_MEMTABLE_THRESHOLD", defaults.memtable_threshold),
            compaction_threshold=_int(
                env, "MVKV_COMPACTION_THRESHOLD", defaults.compaction_threshold
            ),
            compaction_interval_s=_float(
                env, "MVKV_COMPACTION_INTERVAL_S", defaults.compaction_interval_s
            ),
            compaction_enabled=_bool(env, "MVKV_COMPACTION_ENABLED", defaults.compaction_enabled),
            history_retention=_int(env, "MVKV_HISTORY_RETENTION", defaults.history_retention),
            write_policy=env.get("MVKV_WRITE_POLICY", defaults.write_policy).lower(),
            detect_conflicts=_bool(env, "MVKV_DETECT_CONFLICTS", defaults.detect_conflicts),
            restore_batch_size=_int(env, "MVKV_RESTORE_BATCH_SIZE", defaults.restore_batch_size),
            max_body_bytes=_int(env, "MVKV_MAX_BODY_BYTES", defaults.max_body_bytes),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        )


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")
