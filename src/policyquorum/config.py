"""Environment configuration for policyquorum."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

ENV_PREFIX = "POLICYQUORUM_"

_TRUE = {"1", "true", "yes", "on"}


def _get(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(ENV_PREFIX + name, default)


@dataclass(frozen=True)
class Settings:
    """Runtime settings, usually built with ``Settings.from_env()``."""

    db_path: Path = Path("data/policyquorum.db")
    audit_signing_key: Path | None = None
    strict_commit: bool = False
    default_threshold: int = 1
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        signing_key = _get(env, "AUDIT_SIGNING_KEY", "").strip()
        threshold = int(_get(env, "DEFAULT_THRESHOLD", "1"))
        if threshold < 1:
            raise ValueError(f"{ENV_PREFIX}DEFAULT_THRESHOLD must be >= 1")
        return cls(
            db_path=Path(_get(env, "DB_PATH", "data/policyquorum.db")),
            audit_signing_key=Path(signing_key) if signing_key else None,
            strict_commit=_get(env, "STRICT_COMMIT", "false").strip().lower() in _TRUE,
            default_threshold=threshold,
            log_level=_get(env, "LOG_LEVEL", "INFO").strip().upper() or "INFO",
            host=_get(env, "HOST", "127.0.0.1"),
            port=int(_get(env, "PORT", "8000")),
        )
