from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from slixmpp.xmlstream import ET

from shared.stanza import get_text, local_name


class QueueAction(str, Enum):
    """Values of the 'action' attribute on the jibri-queue element."""

    # Client → queue service
    JOIN = "join"
    LEAVE = "leave"

    # Queue service → client (pushes)
    INFO = "info"
    TOKEN = "token"

    @classmethod
    def from_string(cls, value: str) -> QueueAction:
        """Convert string to QueueAction enum, raise ValueError if unknown."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown queue action: {value}")

    @classmethod
    def is_valid(cls, value: Optional[str]) -> bool:
        """Check if string is a valid queue action."""
        try:
            cls(value)
            return True
        except ValueError:
            return False


class EventKind(str, Enum):
    """Events a QueueClient publishes to its listeners."""
    METRICS = "metrics"
    TOKEN = "token"


# Child tag of an info push → metrics key
INFO_FIELDS: Dict[str, str] = {
    "position": "position",
    "time": "estimatedTimeLeft",
}


@dataclass
class QueueMetrics:
    """Last known position and estimated wait, as the service sent them (strings)."""
    position: Optional[str] = None
    estimated_time_left: Optional[str] = None

    def update(self, key: str, value: str) -> bool:
        """Store one field; True if the value changed."""
        if key == "position":
            if value == self.position:
                return False
            self.position = value
            return True
        if key == "estimatedTimeLeft":
            if value == self.estimated_time_left:
                return False
            self.estimated_time_left = value
            return True
        raise KeyError(key)

    def as_dict(self) -> Dict[str, str]:
        """Snapshot with only the fields received so far."""
        snapshot: Dict[str, str] = {}
        if self.position is not None:
            snapshot["position"] = self.position
        if self.estimated_time_left is not None:
            snapshot["estimatedTimeLeft"] = self.estimated_time_left
        return snapshot


# ========================================
#           INBOUND UPDATES
# ========================================

@dataclass
class InfoUpdate:
    # (metrics key, text) in document order
    fields: List[Tuple[str, str]] = field(default_factory=list)

@dataclass
class TokenUpdate:
    value: Optional[str]

@dataclass
class UnknownUpdate:
    action: Optional[str]

InboundUpdate = Union[InfoUpdate, TokenUpdate, UnknownUpdate]


def parse_update(payload: ET.Element) -> InboundUpdate:
    """
    Classify a jibri-queue element pushed by the queue service.

    Children of an info push other than position/time are skipped.
    """
    action = payload.get("action")

    if action == QueueAction.INFO.value:
        update = InfoUpdate()
        for child in payload:
            key = INFO_FIELDS.get(local_name(child.tag))
            if key is not None:
                update.fields.append((key, get_text(child)))
        return update

    if action == QueueAction.TOKEN.value:
        return TokenUpdate(value=payload.get("value"))

    return UnknownUpdate(action=action)
