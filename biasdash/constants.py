"""
biasdash.constants — Frozen domain constants for the bias dashboard API.

Every module that needs these values imports them from here.
Changing a value here changes the scoring payload sent upstream or the
bias adjustment applied to it; treat edits as behaviour changes.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Fixture normalisation
# ---------------------------------------------------------------------------

COUNTRY_FIELDS: tuple[str, ...] = ("country", "Country", "origin", "Origin")
"""Raw candidate fields consulted, in order, to resolve the canonical
lowercase ``country`` key. The first non-empty value wins."""

CANDIDATES_FILE: str = "bias_data.json"
COUNTRY_STATS_FILE: str = "country_stats.json"

# ---------------------------------------------------------------------------
# Bias adjustment
# ---------------------------------------------------------------------------

PROTECTED_FLAGS: frozenset[str] = frozenset({"gender", "migrant"})
"""Bias flags that qualify a candidate for the score bump."""

BUMP_PER_FLAG: float = 5.0
"""Points added per protected flag, before the tolerance multiplier."""

# ---------------------------------------------------------------------------
# Feature payload
# ---------------------------------------------------------------------------

EDUCATION_CODES: dict[str, int] = {
    "high school": 1,
    "bachelors": 2,
    "masters": 3,
    "phd": 4,
}
DEFAULT_EDUCATION_CODE: int = 1

# (exclusive upper bound on years of experience, age-group bucket)
AGE_GROUP_THRESHOLDS: tuple[tuple[int, int], ...] = (
    (2, 1),
    (5, 2),
    (10, 3),
)
DEFAULT_AGE_GROUP: int = 4

PROFESSIONAL_DEVELOPER: int = 1

DEMOGRAPHIC_FIELDS: tuple[str, ...] = (
    "female_low_education",
    "male_low_education",
    "female_mid_education",
    "male_mid_education",
    "female_high_education",
    "male_high_education",
)

# ---------------------------------------------------------------------------
# Upstream scorer
# ---------------------------------------------------------------------------

SCORING_TIMEOUT_SECONDS: float = 15.0
SCORING_PREDICT_PATH: str = "/predict"
SCORE_FIELD: str = "qualification_score"

DEFAULT_BATCH_CONCURRENCY: int = 5
"""Maximum in-flight upstream calls per batch. 0 disables the bound."""

# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

CSV_COLUMNS: tuple[str, ...] = (
    "name",
    "years_experience",
    "education",
    "qualification_score",
    "bias_flags",
    "country",
)
CSV_LIST_SEPARATOR: str = ";"
CSV_FILENAME: str = "individuals.csv"

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

ROLES: frozenset[str] = frozenset({"admin", "user"})
SESSION_COOKIE: str = "biasdash_session"
AUDIT_LOG_LIMIT: int = 500
"""Most recent login rows served by /api/logs; older rows stay stored."""
