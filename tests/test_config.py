"""Tests for engine configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from dualpath.cognitive.config import THRESHOLD_MAX, THRESHOLD_MIN, CognitiveConfig


class TestCognitiveConfig:
    def test_defaults(self) -> None:
        config = CognitiveConfig()
        assert config.router.threshold == 0.4
        assert config.router.adapt_rate == 0.05
        assert config.fast.min_confidence == 0.6
        assert config.deliberate.max_retries == 3
        assert config.sandbox.timeout_ms == 30_000
        assert config.sandbox.max_output_bytes == 1_048_576

    def test_from_dict_clamps_router_values(self) -> None:
        """Out-of-range router values are clamped into range."""
        config = CognitiveConfig.from_dict({"router": {"threshold": 0.05, "adapt_rate": 5}})
        assert config.router.threshold == THRESHOLD_MIN
        assert config.router.adapt_rate == 0.2

        config = CognitiveConfig.from_dict({"router": {"threshold": 0.99}})
        assert config.router.threshold == THRESHOLD_MAX

    def test_nested_cognitive_table(self) -> None:
        config = CognitiveConfig.from_dict(
            {"cognitive": {"fast": {"min_confidence": 0.75}, "deliberate": {"max_retries": 5}}}
        )
        assert config.fast.min_confidence == 0.75
        assert config.deliberate.max_retries == 5

    def test_retry_floor(self) -> None:
        config = CognitiveConfig.from_dict({"deliberate": {"max_retries": 0}})
        assert config.deliberate.max_retries == 1

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.toml"
        path.write_text(
            '[sandbox]\ntimeout_ms = 1000\nallow_network = false\n'
            '[[sandbox.extra_blocked_patterns]]\npattern = "helm\\\\s+uninstall"\n',
            encoding="utf-8",
        )
        config = CognitiveConfig.load_from_file(path)
        assert config.sandbox.timeout_ms == 1000
        assert config.sandbox.allow_network is False
        assert config.sandbox.extra_blocked_patterns == [
            {"pattern": r"helm\s+uninstall", "label": "custom rule"}
        ]

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = CognitiveConfig.load_from_file(tmp_path / "nope.toml")
        assert config.router.threshold == 0.4

    @pytest.mark.parametrize("content", ["[router\nthreshold = ", '[router]\nthreshold = "high"\n'])
    def test_bad_file_gives_defaults(self, tmp_path: Path, content: str) -> None:
        """Unparseable or mistyped files log a warning and fall back to defaults."""
        path = tmp_path / "settings.toml"
        path.write_text(content, encoding="utf-8")
        config = CognitiveConfig.load_from_file(path)
        assert config.router.threshold == 0.4
