"""Event envelope, in-process bus and Kafka publisher."""
from commerce.messaging.bus import EventBus, EventDeliveryError
from commerce.messaging.envelope import EventEnvelope

__all__ = ["EventBus", "EventDeliveryError", "EventEnvelope"]
