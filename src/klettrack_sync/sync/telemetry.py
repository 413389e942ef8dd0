"""Conflict telemetry and sync trigger metrics."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from klettrack_sync.utils.timeutils import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

MAX_IN_MEMORY_EVENTS = 50
MAX_AUDIT_ENTRIES = 200


class TelemetryEventType(StrEnum):
    DETECTED = "detected"
    KEEP_MINE = "keep_mine"
    KEEP_SERVER = "keep_server"


@dataclass(frozen=True)
class ConflictTelemetryEvent:
    """One conflict lifecycle event (detection or resolution)."""

    event_type: TelemetryEventType
    entity: str
    entity_id: str
    reason: str
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "eventType": self.event_type.value,
            "timestamp": to_iso(self.timestamp),
            "entity": self.entity,
            "entityId": self.entity_id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConflictTelemetryEvent | None:
        try:
            event_type = TelemetryEventType(data.get("eventType"))
        except ValueError:
            return None
        return cls(
            event_type=event_type,
            entity=str(data.get("entity", "")),
            entity_id=str(data.get("entityId", "")),
            reason=str(data.get("reason", "")),
            timestamp=parse_iso(data.get("timestamp")) or utcnow(),
            id=str(data.get("id") or uuid.uuid4()),
        )


class ConflictAuditLog:
    """Newest-first JSON file of conflict events, capped at ``max_entries``."""

    def __init__(self, path: Path, max_entries: int = MAX_AUDIT_ENTRIES) -> None:
        self._path = path
        self._max_entries = max_entries

    @property
    def path(self) -> Path:
        return self._path

    def append(self, event: ConflictTelemetryEvent) -> None:
        entries = [event, *self.load()][: self._max_entries]
        content = json.dumps([e.to_dict() for e in entries], indent=2)

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".json.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(self._path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def load(self) -> list[ConflictTelemetryEvent]:
        if not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Corrupt conflict audit log at %s, starting fresh", self._path)
            return []
        if not isinstance(raw, list):
            return []
        return [e for item in raw if isinstance(item, dict) and (e := ConflictTelemetryEvent.from_dict(item))]


def normalized_reason(reason: str) -> str:
    trimmed = reason.strip()
    return trimmed if trimmed else "unspecified"


@dataclass
class TriggerMetrics:
    """Counts of sync triggers by reason, plus failures."""

    total_trigger_count: int = 0
    failure_count: int = 0
    last_trigger_at: datetime | None = None
    trigger_count_by_reason: dict[str, int] = field(default_factory=dict)

    def record_trigger(self, reason: str, at: datetime | None = None) -> None:
        key = normalized_reason(reason)
        self.total_trigger_count += 1
        self.last_trigger_at = at or utcnow()
        self.trigger_count_by_reason[key] = self.trigger_count_by_reason.get(key, 0) + 1

    def record_failure(self) -> None:
        self.failure_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trigger_count": self.total_trigger_count,
            "failure_count": self.failure_count,
            "last_trigger_at": to_iso(self.last_trigger_at) if self.last_trigger_at else None,
            "trigger_count_by_reason": dict(self.trigger_count_by_reason),
        }
