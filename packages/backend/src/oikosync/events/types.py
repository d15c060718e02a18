"""Change event types.

Learn: A ChangeEvent is the unit of propagation. It is created once by the
ChangeNotifier after a write commits and is never mutated afterwards —
subscribers, the Redis relay and the WebSocket layer all see the same frozen
object (or its JSON form on the wire).

Identity is (organization_id, entity_type, entity_id, sequence). The sequence
is monotonic per organization, which is what lets every consumer check that it
observes one organization's changes in order.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EntityType(str, Enum):
    """Domain entities whose mutations are propagated."""

    PROPERTY = "property"
    CLIENT = "client"
    ACTIVITY = "activity"
    INTERACTION = "interaction"
    TASK = "task"


class Operation(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    ARCHIVED = "archived"
    DELETED = "deleted"


def scope_tag(entity_type: EntityType, organization_id: str) -> str:
    """Cache tag shared by everything derived from one org's entities of a type."""
    return f"{EntityType(entity_type).value}:{organization_id}"


def parse_entity_types(raw: str) -> frozenset[EntityType]:
    """Parse a comma-separated list like "property,client".

    Raises ValueError on unknown names.
    """
    names = [part.strip().lower() for part in raw.split(",") if part.strip()]
    return frozenset(EntityType(name) for name in names)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChangeEvent:
    """One committed mutation of one entity."""

    entity_type: EntityType
    entity_id: str
    organization_id: str
    operation: Operation
    sequence: int
    occurred_at: datetime = field(default_factory=_utcnow)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    updated_by: Optional[str] = None
    updated_fields: tuple[str, ...] = ()
    source: str = "api"

    @property
    def type(self) -> str:
        """Dotted event name, e.g. "property.created"."""
        return f"{self.entity_type.value}.{self.operation.value}"

    @property
    def tag(self) -> str:
        return scope_tag(self.entity_type, self.organization_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "organization_id": self.organization_id,
            "operation": self.operation.value,
            "sequence": self.sequence,
            "occurred_at": self.occurred_at.isoformat(),
            "updated_by": self.updated_by,
            "updated_fields": list(self.updated_fields),
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        return cls(
            entity_type=EntityType(data["entity_type"]),
            entity_id=str(data["entity_id"]),
            organization_id=str(data["organization_id"]),
            operation=Operation(data["operation"]),
            sequence=int(data["sequence"]),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            event_id=data.get("event_id") or uuid.uuid4().hex,
            updated_by=data.get("updated_by"),
            updated_fields=tuple(data.get("updated_fields") or ()),
            source=data.get("source") or "api",
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: str) -> "ChangeEvent":
        return cls.from_dict(json.loads(payload))
