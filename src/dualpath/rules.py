"""Heuristic rule tables.

Every keyword list and regex used by the router, fast responder, planner,
sandbox gate and reflection is data, loaded from the packaged
``data/rules.toml``. A user file can override the keys of any top-level
table (``router``, ``fast``, ``planner``, ``reflection``, ``sandbox``).
"""

from __future__ import annotations

import logging
import re
import tomllib
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

from .errors import RulesError

logger = logging.getLogger(__name__)


def _compile(pattern: str, *, where: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise RulesError(f"invalid regex in {where}: {pattern!r} ({exc})") from exc


@dataclass(frozen=True)
class KeywordSet:
    """A family of keywords matched against lowercased text.

    ASCII keywords match at a word start ("test" matches "tests" but "ui"
    does not match "build"); other keywords match anywhere, since CJK text
    has no word separators.
    """

    keywords: tuple[str, ...]
    _matchers: tuple[re.Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        matchers = []
        for keyword in self.keywords:
            escaped = re.escape(keyword.lower())
            if keyword.isascii() and keyword[:1].isalnum():
                escaped = r"(?<![a-z0-9])" + escaped
            matchers.append(re.compile(escaped))
        object.__setattr__(self, "_matchers", tuple(matchers))

    def matched(self, text: str) -> list[str]:
        lowered = text.lower()
        return [kw for kw, rx in zip(self.keywords, self._matchers) if rx.search(lowered)]

    def count(self, text: str) -> int:
        return len(self.matched(text))

    def any(self, text: str) -> bool:
        lowered = text.lower()
        return any(rx.search(lowered) for rx in self._matchers)


@dataclass(frozen=True)
class BlockRule:
    """One deny-list entry: a command regex and the label reported when it matches."""

    pattern: re.Pattern[str]
    label: str

    @classmethod
    def from_strings(cls, pattern: str, label: str) -> BlockRule:
        return cls(pattern=_compile(pattern, where="sandbox.deny"), label=label)


@dataclass(frozen=True)
class RiskRule:
    keywords: KeywordSet
    severity: str
    description: str
    mitigation: str


@dataclass(frozen=True)
class CorrectionRule:
    match: tuple[str, ...]
    suffix: str


@dataclass(frozen=True)
class RuleTables:
    # Router
    domains: dict[str, KeywordSet]
    uncertainty: KeywordSet
    risk: KeywordSet
    step_patterns: tuple[re.Pattern[str], ...]
    conjunction_pattern: re.Pattern[str]

    # Fast responder
    operations: dict[str, tuple[str, ...]]
    targets: dict[str, tuple[str, ...]]

    # Planner
    high_complexity: KeywordSet
    low_complexity: KeywordSet
    complex_task_types: frozenset[str]
    simple_task_types: frozenset[str]
    multi_step_words: KeywordSet
    domain_complexity_words: KeywordSet
    risk_rules: tuple[RiskRule, ...]
    teams: dict[str, tuple[str, ...]]
    leadership_roles: tuple[str, ...]

    # Reflection
    corrections: tuple[CorrectionRule, ...]
    default_correction: str

    # Sandbox
    deny_list: tuple[BlockRule, ...]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuleTables:
        """Build tables from a parsed TOML document."""
        try:
            router = data["router"]
            fast = data["fast"]
            planner = data["planner"]
            reflection = data["reflection"]
            sandbox = data["sandbox"]

            return cls(
                domains={
                    name: KeywordSet(tuple(words))
                    for name, words in router["domains"].items()
                },
                uncertainty=KeywordSet(tuple(router["uncertainty"])),
                risk=KeywordSet(tuple(router["risk"])),
                step_patterns=tuple(
                    _compile(p, where="router.step_patterns") for p in router["step_patterns"]
                ),
                conjunction_pattern=_compile(
                    router["conjunction_pattern"], where="router.conjunction_pattern"
                ),
                operations={k: tuple(v) for k, v in fast["operations"].items()},
                targets={k: tuple(v) for k, v in fast["targets"].items()},
                high_complexity=KeywordSet(tuple(planner["high_complexity"])),
                low_complexity=KeywordSet(tuple(planner["low_complexity"])),
                complex_task_types=frozenset(planner["complex_task_types"]),
                simple_task_types=frozenset(planner["simple_task_types"]),
                multi_step_words=KeywordSet(tuple(planner["multi_step_words"])),
                domain_complexity_words=KeywordSet(tuple(planner["domain_complexity_words"])),
                risk_rules=tuple(
                    RiskRule(
                        keywords=KeywordSet(tuple(r["keywords"])),
                        severity=r["severity"],
                        description=r["description"],
                        mitigation=r["mitigation"],
                    )
                    for r in planner.get("risks", [])
                ),
                teams={k: tuple(v) for k, v in planner["teams"].items()},
                leadership_roles=tuple(planner.get("leadership", {}).get("roles", [])),
                corrections=tuple(
                    CorrectionRule(match=tuple(m.lower() for m in c["match"]), suffix=c["suffix"])
                    for c in reflection.get("corrections", [])
                ),
                default_correction=reflection["default_suffix"],
                deny_list=tuple(
                    BlockRule.from_strings(d["pattern"], d["label"])
                    for d in sandbox.get("deny", [])
                ),
            )
        except KeyError as exc:
            raise RulesError(f"rule tables missing key: {exc}") from exc


def _read_packaged() -> dict[str, Any]:
    text = resources.files("dualpath").joinpath("data/rules.toml").read_text(encoding="utf-8")
    return tomllib.loads(text)


@lru_cache(maxsize=1)
def default_rules() -> RuleTables:
    """The packaged rule tables, parsed once per process."""
    return RuleTables.from_dict(_read_packaged())


def load_rules(path: Path | str | None = None) -> RuleTables:
    """Load rule tables, overlaying the top-level tables of ``path`` on the packaged ones."""
    if path is None:
        return default_rules()

    path = Path(path)
    try:
        with open(path, "rb") as f:
            overlay = tomllib.load(f)
    except FileNotFoundError:
        logger.debug("Rules file not found, using packaged rules: %s", path)
        return default_rules()
    except tomllib.TOMLDecodeError as exc:
        raise RulesError(f"cannot parse rules file {path}: {exc}") from exc

    data = _read_packaged()
    for table, value in overlay.items():
        if table not in data:
            logger.warning("Ignoring unknown rules table %r in %s", table, path)
            continue
        if isinstance(value, dict) and isinstance(data[table], dict):
            data[table] = {**data[table], **value}
        else:
            data[table] = value
    logger.info("Loaded rule overlay from %s (tables: %s)", path, ", ".join(sorted(overlay)))
    return RuleTables.from_dict(data)
