"""Pydantic schemas for change notifications.

Learn: ChangeNotification is what the CRM app POSTs after it commits a write.
ChangeEventRead is the published event as returned to the caller and sent
over the WebSocket.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from oikosync.events.types import ChangeEvent, EntityType, Operation


class ChangeNotification(BaseModel):
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1, max_length=64)
    operation: Operation
    updated_by: Optional[str] = None
    updated_fields: list[str] = Field(default_factory=list)


class ChangeEventRead(BaseModel):
    event_id: str
    type: str
    entity_type: EntityType
    entity_id: str
    organization_id: str
    operation: Operation
    sequence: int
    occurred_at: datetime
    updated_by: Optional[str]
    updated_fields: list[str]
    source: str

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "ChangeEventRead":
        return cls(**event.to_dict())
