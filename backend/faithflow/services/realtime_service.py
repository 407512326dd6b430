"""Realtime giving events published over Redis pub/sub"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

from faithflow.db.redis import publish_message
from faithflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RealtimeEvent:
    type: str  # 'donation.created'
    church_id: int
    data: Dict[str, Any] = field(default_factory=dict)


def giving_channel(church_id: int) -> str:
    return f"church:{church_id}:giving"


def emit_realtime_event(event: RealtimeEvent) -> bool:
    """Publish an event to the church's giving channel.

    Realtime delivery is best-effort: failures are logged and never undo the
    committed state change that produced the event.
    """
    message = {
        "type": event.type,
        "data": event.data,
        "timestamp": utcnow().isoformat(),
    }
    channel = giving_channel(event.church_id)
    try:
        receivers = publish_message(channel, message)
        logger.info(f"Published {event.type} to {channel}: {receivers} subscriber(s)")
        return True
    except Exception as e:
        logger.warning(f"Failed to publish {event.type} to {channel}: {e}")
        return False
