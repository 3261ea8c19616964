"""
biasdash.batch — Bias-fixer batch simulation.

For every served candidate, independently:
    1. resolve country statistics (missing → zeros, logged)
    2. build the upstream feature payload
    3. score it upstream
    4. bump = tolerance * BUMP_PER_FLAG * (# protected flags)
    5. adjusted = original + bump; hired = adjusted >= min_score

Scores are on the 0-100 scale the upstream returns; nothing is rescaled.
Calls run concurrently, bounded by ``concurrency`` (0 = unbounded).
All-or-nothing: the first failing call fails the batch. Sibling calls
already in flight are left to finish and their results are discarded.
The output order is the input order, not completion order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from biasdash.constants import (
    AGE_GROUP_THRESHOLDS,
    BUMP_PER_FLAG,
    DEFAULT_AGE_GROUP,
    DEFAULT_BATCH_CONCURRENCY,
    DEFAULT_EDUCATION_CODE,
    DEMOGRAPHIC_FIELDS,
    EDUCATION_CODES,
    PROFESSIONAL_DEVELOPER,
    PROTECTED_FLAGS,
    SCORE_FIELD,
)
from biasdash.scoring import ScoringClient, ScoringError

logger = logging.getLogger("biasdash.batch")

StatsLookup = Callable[[str], dict[str, Any] | None]


# ---------------------------------------------------------------------------
# Request model
# ---------------------------------------------------------------------------

class BatchRequest(BaseModel):
    """Global parameters for one bias-fixer run. Both fields required."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    min_score: float = Field(..., alias="minScore", allow_inf_nan=False)
    tolerance: float = Field(..., allow_inf_nan=False)


# ---------------------------------------------------------------------------
# Pure feature / adjustment functions
# ---------------------------------------------------------------------------

def age_group(years_experience: Any) -> int:
    """Bucket years of experience: <2 → 1, <5 → 2, <10 → 3, else 4."""
    try:
        years = float(years_experience or 0)
    except (TypeError, ValueError):
        years = 0.0
    for upper, bucket in AGE_GROUP_THRESHOLDS:
        if years < upper:
            return bucket
    return DEFAULT_AGE_GROUP


def education_code(education: Any) -> int:
    if not isinstance(education, str):
        return DEFAULT_EDUCATION_CODE
    return EDUCATION_CODES.get(education.strip().lower(), DEFAULT_EDUCATION_CODE)


def bump_count(bias_flags: Iterable[Any]) -> int:
    """Number of distinct protected flags on the candidate (0, 1 or 2)."""
    return len({str(f).strip().lower() for f in bias_flags} & PROTECTED_FLAGS)


def adjust_score(original: float, tolerance: float, bumps: int) -> float:
    return original + tolerance * BUMP_PER_FLAG * bumps


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def build_features(
    candidate: Mapping[str, Any],
    stats: Mapping[str, Any] | None,
) -> dict[str, Any]:
    """Upstream payload for one candidate. Missing stats become 0.0."""
    stats = stats or {}
    features: dict[str, Any] = {
        "age_group": age_group(candidate.get("years_experience")),
        "ed_level": education_code(candidate.get("education")),
        "is_professional_dev": PROFESSIONAL_DEVELOPER,
        "years_code": candidate.get("years_experience") or 0,
    }
    for field in DEMOGRAPHIC_FIELDS:
        value = stats.get(field)
        features[field] = float(value) if isinstance(value, (int, float)) else 0.0
    return features


def extract_score(body: Mapping[str, Any]) -> float:
    """Read the numeric score from an upstream response body."""
    value = body.get(SCORE_FIELD)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ScoringError(None, f"Scoring service response has no numeric '{SCORE_FIELD}'")
    return float(value)


def evaluate(candidate: Mapping[str, Any], original: float, params: BatchRequest) -> dict[str, Any]:
    adjusted = adjust_score(original, params.tolerance, bump_count(candidate.get("bias_flags", [])))
    return {
        "name": candidate.get("name"),
        "original_score": original,
        "adjusted_score": round_half_up(adjusted),
        "hired": adjusted >= params.min_score,
    }


# ---------------------------------------------------------------------------
# Batch runner
# ---------------------------------------------------------------------------

async def run_batch(
    candidates: list[dict[str, Any]],
    stats_lookup: StatsLookup,
    client: ScoringClient,
    params: BatchRequest,
    concurrency: int = DEFAULT_BATCH_CONCURRENCY,
) -> list[dict[str, Any]]:
    """Score and adjust every candidate. Raises ScoringError on any failure."""
    semaphore = asyncio.Semaphore(concurrency) if concurrency > 0 else None
    t0 = time.monotonic()

    async def score_one(candidate: dict[str, Any]) -> dict[str, Any]:
        stats = stats_lookup(candidate["country"])
        if stats is None:
            logger.warning(json.dumps({
                "event": "country_stats_missing",
                "name": candidate.get("name"),
                "country": candidate["country"],
            }))
        features = build_features(candidate, stats)
        if semaphore is None:
            body = await client.predict(features)
        else:
            async with semaphore:
                body = await client.predict(features)
        return evaluate(candidate, extract_score(body), params)

    results = await asyncio.gather(*(score_one(c) for c in candidates))

    logger.info(json.dumps({
        "event": "batch_complete",
        "candidates": len(results),
        "hired": sum(1 for r in results if r["hired"]),
        "concurrency": concurrency,
        "duration_ms": round((time.monotonic() - t0) * 1000, 1),
    }))
    return list(results)
