from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError

from .models import PatternRecord

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class InMemoryPatternStore:
    """Pattern store kept in a dict; for tests and embedding."""

    def __init__(self, patterns: list[PatternRecord] | None = None):
        self._patterns: dict[str, PatternRecord] = {}
        for record in patterns or []:
            self.save_pattern(record)

    def load_patterns(self) -> list[PatternRecord]:
        return list(self._patterns.values())

    def save_pattern(self, record: PatternRecord) -> None:
        self._patterns[record.id] = record

    def get(self, pattern_id: str) -> PatternRecord | None:
        return self._patterns.get(pattern_id)


class JsonPatternStore:
    """One JSON file per pattern under ``root``.

    Files holding ``{"patterns": [...]}`` are read as collections. Unreadable
    or invalid files are skipped with a warning so one bad file does not
    empty the warm cache.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _path_for(self, pattern_id: str) -> Path:
        return self.root / f"{_SAFE_NAME.sub('_', pattern_id)}.json"

    def load_patterns(self) -> list[PatternRecord]:
        if not self.root.is_dir():
            return []

        records: dict[str, PatternRecord] = {}
        for path in sorted(self.root.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable pattern file %s: %s", path, exc)
                continue

            items = data.get("patterns", []) if isinstance(data, dict) and "patterns" in data else [data]
            for item in items:
                try:
                    record = PatternRecord.model_validate(item)
                except ValidationError as exc:
                    logger.warning(
                        "Skipping invalid pattern in %s: %d validation error(s)",
                        path,
                        exc.error_count(),
                    )
                    continue
                records[record.id] = record

        logger.debug("Loaded %d pattern(s) from %s", len(records), self.root)
        return list(records.values())

    def save_pattern(self, record: PatternRecord) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self._path_for(record.id)
        payload = record.model_dump_json(indent=2)

        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".pattern-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
