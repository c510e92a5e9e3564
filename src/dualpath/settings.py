from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_path(name: str, default: Path | None) -> Path | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True)
class Settings:
    """Process-level settings read from ``DUALPATH_*`` environment variables.

    Engine tuning (thresholds, TTLs, retry limits) lives in the TOML config
    loaded by :class:`dualpath.cognitive.config.CognitiveConfig`; this only
    covers where things live on disk and how logging behaves.
    """

    data_dir: Path = _env_path("DUALPATH_DATA_DIR", Path.home() / ".dualpath")  # type: ignore[assignment]
    log_path: Path = _env_path("DUALPATH_LOG_PATH", data_dir / "dualpath.log")  # type: ignore[assignment]
    log_level: str = os.environ.get("DUALPATH_LOG_LEVEL", "INFO")
    log_format: str = os.environ.get("DUALPATH_LOG_FORMAT", "text")
    log_max_bytes: int = int(os.environ.get("DUALPATH_LOG_MAX_BYTES", str(1_000_000)))
    log_backup_count: int = int(os.environ.get("DUALPATH_LOG_BACKUP_COUNT", "3"))

    # TOML engine config; a missing file means defaults.
    config_path: Path = _env_path(  # type: ignore[assignment]
        "DUALPATH_CONFIG_PATH",
        Path.home() / ".config" / "dualpath" / "settings.toml",
    )

    # Optional overlay for the packaged rule tables.
    rules_path: Path | None = _env_path("DUALPATH_RULES_PATH", None)

    # One JSON file per learned pattern.
    patterns_dir: Path = _env_path("DUALPATH_PATTERNS_DIR", data_dir / "patterns")  # type: ignore[assignment]


settings = Settings()
