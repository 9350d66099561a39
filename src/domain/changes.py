"""
Typed change notifications.

Realtime payloads arrive loosely typed (``{"eventType": "UPDATE", "table":
"ride_requests", "new": {...}}``).  ``decode_change`` turns them into a
``ChangeEvent`` at the boundary so nothing downstream deals with raw dicts.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Mapping, Optional


class ChangeKind(str, enum.Enum):
    INSERTED = "INSERT"
    UPDATED = "UPDATE"
    DELETED = "DELETE"


class EntityType(str, enum.Enum):
    EVENT = "events"
    DRIVER = "drivers"
    RIDE_REQUEST = "ride_requests"
    RIDE_BATCH = "ride_batches"
    RIDE_BATCH_ITEM = "ride_batch_items"
    RIDER_PENALTY = "rider_penalties"
    EMERGENCY_EVENT = "emergency_events"
    RIDER_CONSENT = "rider_consents"


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    entity: EntityType
    entity_id: int
    event_id: Optional[int] = None

    @property
    def channel(self) -> str:
        return f"changes:{self.event_id}" if self.event_id is not None else "changes"

    def to_payload(self) -> dict[str, Any]:
        return {
            "eventType": self.kind.value,
            "table": self.entity.value,
            "id": self.entity_id,
            "event_id": self.event_id,
        }


def decode_change(payload: Mapping[str, Any]) -> ChangeEvent:
    """Decode a raw change payload; raises ``ValueError`` on unknown shapes."""
    try:
        kind = ChangeKind(payload["eventType"])
        entity = EntityType(payload["table"])
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unrecognised change payload: {payload!r}") from exc

    # Deletes only carry the old row
    row = payload.get("new") or payload.get("old") or {}
    entity_id = payload.get("id", row.get("id"))
    if entity_id is None:
        raise ValueError(f"Change payload has no row id: {payload!r}")

    event_id = payload.get("event_id", row.get("event_id"))
    return ChangeEvent(
        kind=kind,
        entity=entity,
        entity_id=int(entity_id),
        event_id=int(event_id) if event_id is not None else None,
    )
