"""Best-effort recorder for privileged mutations."""

from __future__ import annotations

import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from concurrent.futures import Executor, Future
from datetime import datetime
import json
from typing import Optional, Protocol, Tuple

from ..observability import AUDIT_WRITE_FAILURES
from .contracts import AuditEntry
from .errors import ValidationError

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def write_audit_event(self, entry: AuditEntry) -> None: ...


class AuditLogger:
    """Fire-and-forget audit writer.

    A failure to persist an entry is logged here and never reaches the
    caller, so an audited action cannot fail because of its audit record.
    When an executor is supplied the write happens off the request path.
    """

    def __init__(self, sink: AuditSink, executor: Executor | None = None) -> None:
        self._sink = sink
        self._executor = executor

    def record(self, entry: AuditEntry) -> None:
        if self._executor is None:
            self._write(entry)
            return
        try:
            future = self._executor.submit(self._write, entry)
        except RuntimeError:
            # executor already shut down during application teardown
            logger.warning("audit executor unavailable, writing inline action=%s", entry.action.value)
            self._write(entry)
            return
        future.add_done_callback(_log_unexpected)

    def _write(self, entry: AuditEntry) -> None:
        try:
            self._sink.write_audit_event(entry)
        except Exception:
            AUDIT_WRITE_FAILURES.inc()
            logger.exception(
                "failed to persist audit entry action=%s entity=%s:%s",
                entry.action.value,
                entry.entity_type,
                entry.entity_id,
            )


def _log_unexpected(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("audit worker raised unexpectedly: %s", exc)


def encode_cursor(cursor: Tuple[datetime, int] | None) -> str | None:
    if cursor is None:
        return None
    created_at, audit_id = cursor
    payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
    return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")


def decode_cursor(cursor: str | None) -> Optional[Tuple[datetime, int]]:
    if not cursor:
        return None
    try:
        data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
        return datetime.fromisoformat(data["created_at"]), int(data["audit_id"])
    except Exception as exc:
        raise ValidationError("invalid cursor", fields={"cursor": "malformed"}) from exc


class AuditTrail:
    """Read side of the audit log, scoped by tenant."""

    def __init__(self, repository) -> None:
        self._repository = repository

    def list_events(
        self,
        *,
        tenant_id: str | None,
        actor_id: str | None = None,
        action: str | None = None,
        entity_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ):
        """Return ``(records, next_cursor)`` with an opaque cursor for the next page."""
        records, next_cursor = self._repository.list_audit_events(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decode_cursor(cursor),
        )
        return records, encode_cursor(next_cursor)
