"""
biasdash.fixtures — Read-only candidate and country-statistics store.

Loads bias_data.json (candidate list) and country_stats.json (mapping of
country name → demographic percentages) exactly once, normalises them,
and serves them from memory for the process lifetime.

Design contract:
    - Both documents are required. Missing or malformed JSON raises
      FixtureLoadError; the service does not start without them.
    - Every served candidate carries a non-empty lowercase ``country``.
      Records whose country cannot be resolved are dropped at load and
      logged as ``fixture_record_dropped``; callers never see them.
    - Country lookups are case-insensitive. A miss returns None, never
      a default object.
    - No reload. No mutation after load.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from biasdash.constants import (
    CANDIDATES_FILE,
    COUNTRY_FIELDS,
    COUNTRY_STATS_FILE,
)

logger = logging.getLogger("biasdash.fixtures")


class FixtureLoadError(Exception):
    """Raised when a fixture document is absent or malformed."""

    def __init__(self, path: Path, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"{path.name}: {detail}")


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------

def _load_json(filepath: Path) -> Any:
    """Load a JSON file or raise FixtureLoadError."""
    if not filepath.is_file():
        raise FixtureLoadError(filepath, "file not found")
    try:
        with open(filepath, encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise FixtureLoadError(filepath, f"invalid JSON at line {exc.lineno}: {exc.msg}")
    except OSError as exc:
        raise FixtureLoadError(filepath, f"unreadable ({type(exc).__name__})")


def resolve_country(raw: Mapping[str, Any]) -> str:
    """Return the canonical country key for a raw record, or "" if none."""
    for field in COUNTRY_FIELDS:
        value = raw.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return ""


def normalize_candidates(raw_records: Iterable[Any]) -> list[dict[str, Any]]:
    """Resolve ``country`` on each record and drop the unresolvable ones.

    Source fields ``Country``/``origin``/``Origin`` are folded into the
    single ``country`` key. Insertion order is preserved.
    """
    normalized: list[dict[str, Any]] = []
    for index, raw in enumerate(raw_records):
        if not isinstance(raw, Mapping):
            logger.warning(json.dumps({
                "event": "fixture_record_dropped",
                "index": index,
                "reason": "record is not an object",
            }))
            continue

        country = resolve_country(raw)
        if not country:
            logger.warning(json.dumps({
                "event": "fixture_record_dropped",
                "index": index,
                "name": raw.get("name"),
                "reason": "no resolvable country",
            }))
            continue

        record = {k: v for k, v in raw.items() if k not in COUNTRY_FIELDS}
        record["country"] = country
        if not isinstance(record.get("bias_flags"), list):
            record["bias_flags"] = []
        normalized.append(record)
    return normalized


def normalize_country_stats(raw: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Lowercase and trim every country key. Later duplicates win."""
    stats: dict[str, dict[str, Any]] = {}
    for name, record in raw.items():
        key = str(name).strip().lower()
        if not key or not isinstance(record, Mapping):
            continue
        stats[key] = dict(record)
    return stats


# ---------------------------------------------------------------------------
# FixtureStore
# ---------------------------------------------------------------------------

class FixtureStore:
    """In-memory, read-only view over the two fixture documents.

    Usage::

        store = FixtureStore.load(Path("biasdash/data"))
        store.get_all()
        store.country_stats("France")
    """

    def __init__(
        self,
        candidates: Iterable[dict[str, Any]],
        country_stats: Mapping[str, Mapping[str, Any]],
    ) -> None:
        self._candidates: tuple[dict[str, Any], ...] = tuple(candidates)
        self._stats: dict[str, dict[str, Any]] = normalize_country_stats(country_stats)

    @classmethod
    def from_raw(
        cls,
        raw_candidates: Iterable[Any],
        raw_stats: Mapping[str, Any],
    ) -> FixtureStore:
        """Build a store from already-parsed documents."""
        return cls(normalize_candidates(raw_candidates), raw_stats)

    @classmethod
    def load(cls, data_dir: Path) -> FixtureStore:
        """Read and normalise both fixture documents from ``data_dir``."""
        candidates_path = data_dir / CANDIDATES_FILE
        stats_path = data_dir / COUNTRY_STATS_FILE

        raw_candidates = _load_json(candidates_path)
        if not isinstance(raw_candidates, list):
            raise FixtureLoadError(candidates_path, "expected a JSON array of candidates")

        raw_stats = _load_json(stats_path)
        if not isinstance(raw_stats, dict):
            raise FixtureLoadError(stats_path, "expected a JSON object keyed by country")

        store = cls.from_raw(raw_candidates, raw_stats)
        logger.info(json.dumps({
            "event": "fixtures_loaded",
            "candidates_raw": len(raw_candidates),
            "candidates_served": len(store),
            "countries": len(store._stats),
        }))
        return store

    def __len__(self) -> int:
        return len(self._candidates)

    @property
    def country_count(self) -> int:
        return len(self._stats)

    def get_all(self) -> list[dict[str, Any]]:
        return list(self._candidates)

    def summarize(self) -> dict[str, Any]:
        """Total, mean qualification score and lowercase bias-flag counts."""
        total = len(self._candidates)
        total_score = 0.0
        bias_counts: dict[str, int] = {}

        for candidate in self._candidates:
            total_score += float(candidate.get("qualification_score") or 0)
            for flag in candidate.get("bias_flags", []):
                norm_flag = str(flag).lower()
                bias_counts[norm_flag] = bias_counts.get(norm_flag, 0) + 1

        return {
            "totalCandidates": total,
            "averageQualificationScore": total_score / total if total else 0,
            "biasDistribution": bias_counts,
        }

    def country_stats(self, name: str) -> dict[str, Any] | None:
        """Case-insensitive lookup. None when the country is unknown."""
        record = self._stats.get(name.strip().lower())
        return dict(record) if record is not None else None

    def list_countries(self) -> list[str]:
        return sorted(self._stats)
