"""Engine configuration loaded from TOML."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

THRESHOLD_MIN = 0.2
THRESHOLD_MAX = 0.7
ADAPT_RATE_MIN = 0.001
ADAPT_RATE_MAX = 0.2


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class RouterConfig:
    threshold: float = 0.4
    adapt_rate: float = 0.05
    max_history: int = 500
    success_streak: int = 5


@dataclass
class FastConfig:
    min_confidence: float = 0.6
    min_pattern_score: float = 0.3
    max_warm_patterns: int = 200
    response_ttl_seconds: float = 600.0
    memory_ttl_seconds: float = 300.0
    tool_ttl_seconds: float = 300.0
    max_input_tokens: int = 100


@dataclass
class DeliberateConfig:
    max_retries: int = 3
    max_steps: int = 10
    stop_on_failure: bool = True


@dataclass
class SandboxConfig:
    timeout_ms: int = 30_000
    max_lifetime_ms: int = 300_000
    max_output_bytes: int = 1_048_576
    allow_network: bool = True
    allow_writes: bool = True
    extra_blocked_patterns: list[dict[str, str]] = field(default_factory=list)


@dataclass
class CognitiveConfig:
    """Configuration for the cognitive engine."""

    router: RouterConfig = field(default_factory=RouterConfig)
    fast: FastConfig = field(default_factory=FastConfig)
    deliberate: DeliberateConfig = field(default_factory=DeliberateConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CognitiveConfig:
        """Create config from dictionary (e.g., loaded from TOML).

        Sections may sit at the top level or under ``[cognitive]``.
        """
        config = cls()
        if "cognitive" in data and isinstance(data["cognitive"], dict):
            data = data["cognitive"]

        if "router" in data:
            r = data["router"]
            config.router.threshold = clamp(
                float(r.get("threshold", config.router.threshold)), THRESHOLD_MIN, THRESHOLD_MAX
            )
            config.router.adapt_rate = clamp(
                float(r.get("adapt_rate", config.router.adapt_rate)), ADAPT_RATE_MIN, ADAPT_RATE_MAX
            )
            config.router.max_history = max(1, int(r.get("max_history", config.router.max_history)))
            config.router.success_streak = max(
                1, int(r.get("success_streak", config.router.success_streak))
            )

        if "fast" in data:
            f = data["fast"]
            for name in (
                "min_confidence",
                "min_pattern_score",
                "response_ttl_seconds",
                "memory_ttl_seconds",
                "tool_ttl_seconds",
            ):
                if name in f:
                    setattr(config.fast, name, float(f[name]))
            config.fast.max_warm_patterns = int(
                f.get("max_warm_patterns", config.fast.max_warm_patterns)
            )
            config.fast.max_input_tokens = int(f.get("max_input_tokens", config.fast.max_input_tokens))

        if "deliberate" in data:
            d = data["deliberate"]
            config.deliberate.max_retries = max(1, int(d.get("max_retries", config.deliberate.max_retries)))
            config.deliberate.max_steps = max(1, int(d.get("max_steps", config.deliberate.max_steps)))
            config.deliberate.stop_on_failure = bool(
                d.get("stop_on_failure", config.deliberate.stop_on_failure)
            )

        if "sandbox" in data:
            s = data["sandbox"]
            config.sandbox.timeout_ms = int(s.get("timeout_ms", config.sandbox.timeout_ms))
            config.sandbox.max_lifetime_ms = int(s.get("max_lifetime_ms", config.sandbox.max_lifetime_ms))
            config.sandbox.max_output_bytes = int(
                s.get("max_output_bytes", config.sandbox.max_output_bytes)
            )
            config.sandbox.allow_network = bool(s.get("allow_network", config.sandbox.allow_network))
            config.sandbox.allow_writes = bool(s.get("allow_writes", config.sandbox.allow_writes))
            config.sandbox.extra_blocked_patterns = [
                {"pattern": str(p["pattern"]), "label": str(p.get("label", "custom rule"))}
                for p in s.get("extra_blocked_patterns", [])
            ]

        return config

    @classmethod
    def load_from_file(cls, path: Path | str | None = None) -> CognitiveConfig:
        """Load configuration from TOML file.

        Args:
            path: Path to config file. Defaults to ``Settings.config_path``.
        """
        if path is None:
            from ..settings import settings

            path = settings.config_path
        else:
            path = Path(path)

        if not path.exists():
            logger.debug("Config file not found, using defaults: %s", path)
            return cls()

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
            return cls.from_dict(data)
        except (OSError, tomllib.TOMLDecodeError, TypeError, ValueError, KeyError) as e:
            logger.warning("Failed to load config from %s: %s", path, e)
            return cls()
