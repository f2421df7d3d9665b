"""
Maps the device payload's numeric `type` onto an event kind.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from app.schemas import WebhookEvent


class EventKind(str, enum.Enum):
    SMS = "sms"
    CALL_RINGING = "call_ringing"
    CALL_CONNECTED = "call_connected"
    CALL_ENDED = "call_ended"
    SIM_STATUS = "sim_status"
    HEARTBEAT = "heartbeat"
    UNKNOWN = "unknown"


TYPE_TO_KIND = {
    501: EventKind.SMS,
    601: EventKind.CALL_RINGING,
    602: EventKind.CALL_CONNECTED,
    603: EventKind.CALL_ENDED,
    998: EventKind.HEARTBEAT,
}

SIM_STATUS_TYPES = frozenset({202, 203, 204, 205, 209})

# Kinds that touch a SIM card and therefore need a slot
SIM_KINDS = frozenset({
    EventKind.SMS,
    EventKind.CALL_RINGING,
    EventKind.CALL_CONNECTED,
    EventKind.CALL_ENDED,
    EventKind.SIM_STATUS,
})


@dataclass(frozen=True)
class ClassifiedEvent:
    kind: EventKind
    event: WebhookEvent
    raw: dict
    status_code: Optional[str] = None

    @property
    def dev_id(self) -> str:
        return self.event.dev_id


def classify_type(type_code: int) -> tuple[EventKind, Optional[str]]:
    """Return the event kind and, for SIM status events, the status code."""
    if type_code in SIM_STATUS_TYPES:
        return EventKind.SIM_STATUS, str(type_code)
    return TYPE_TO_KIND.get(type_code, EventKind.UNKNOWN), None


def classify(event: WebhookEvent, raw: Optional[dict] = None) -> ClassifiedEvent:
    kind, status_code = classify_type(event.type)
    return ClassifiedEvent(
        kind=kind,
        event=event,
        raw=raw if raw is not None else event.model_dump(by_alias=True, exclude_none=True),
        status_code=status_code,
    )
