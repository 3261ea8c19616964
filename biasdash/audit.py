"""
biasdash.audit — Append-only login audit log.

record_login() is best-effort: a failed insert is logged and reported
as False, never raised, so it cannot fail the login it describes.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.exc import SQLAlchemyError

from biasdash.constants import AUDIT_LOG_LIMIT
from biasdash.db import Database, LoginEvent, utcnow

logger = logging.getLogger("biasdash.audit")


def _iso(ts: datetime) -> str:
    # SQLite drops tzinfo on read; stored values are always UTC.
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.isoformat()


def serialize_event(event: LoginEvent) -> dict[str, Any]:
    return {
        "username": event.username,
        "timestamp": _iso(event.timestamp),
        "ip": event.ip,
    }


class AuditLog:
    def __init__(self, db: Database) -> None:
        self._db = db

    def record_login(self, username: str, ip: str | None) -> bool:
        """Append one login row. Returns False (and logs) if the insert fails."""
        try:
            with self._db.session_scope() as session:
                session.add(LoginEvent(username=username, ip=ip, timestamp=utcnow()))
        except SQLAlchemyError as exc:
            logger.error(json.dumps({
                "event": "audit_insert_failed",
                "username": username,
                "error_type": type(exc).__name__,
                "error": str(exc),
            }))
            return False
        return True

    def list_logins(self, limit: int = AUDIT_LOG_LIMIT) -> list[dict[str, Any]]:
        """Newest first. Raises SQLAlchemyError on query failure."""
        q = (
            select(LoginEvent)
            .order_by(desc(LoginEvent.timestamp), desc(LoginEvent.id))
            .limit(max(1, min(limit, AUDIT_LOG_LIMIT)))
        )
        with self._db.session_scope() as session:
            return [serialize_event(e) for e in session.execute(q).scalars().all()]
