"""Wire format shared by the in-process bus and Kafka."""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from commerce.database.models import OutboxEvent


class EventEnvelope(BaseModel):
    """A domain event as seen by consumers."""

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def from_outbox(cls, event: OutboxEvent) -> "EventEnvelope":
        return cls(
            event_id=event.event_id,
            event_type=event.event_type,
            aggregate_type=event.aggregate_type,
            aggregate_id=event.aggregate_id,
            payload=dict(event.payload or {}),
            correlation_id=event.correlation_id,
            occurred_at=event.created_at,
        )

    def to_message(self) -> bytes:
        return self.model_dump_json().encode("utf-8")
