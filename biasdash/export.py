"""
biasdash.export — CSV serialisation of the candidate collection.

Column order is fixed: CSV_COLUMNS first, then any other keys in the
order they are first seen across the collection. List values are joined
with CSV_LIST_SEPARATOR. An empty collection yields the header row only.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Mapping
from typing import Any

from biasdash.constants import CSV_COLUMNS, CSV_LIST_SEPARATOR


def csv_columns(candidates: Iterable[Mapping[str, Any]]) -> list[str]:
    columns = list(CSV_COLUMNS)
    seen = set(columns)
    for candidate in candidates:
        for key in candidate:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def _cell(value: Any) -> Any:
    if isinstance(value, (list, tuple, set, frozenset)):
        return CSV_LIST_SEPARATOR.join(str(v) for v in value)
    if value is None:
        return ""
    return value


def candidates_to_csv(candidates: list[Mapping[str, Any]]) -> str:
    """Render the candidates as CSV text (``\\r\\n`` line endings)."""
    columns = csv_columns(candidates)
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=columns, extrasaction="raise")
    writer.writeheader()
    for candidate in candidates:
        writer.writerow({col: _cell(candidate.get(col)) for col in columns})
    return buf.getvalue()
