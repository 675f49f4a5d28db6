from __future__ import annotations
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from shared.stanza import Stanza


class QueueError(Exception):
    """Base class for queue client errors."""
    pass

class AlreadyJoinedError(QueueError):
    """Raised when join() is called while the queue is already joined."""
    def __init__(self, message: str = "The queue is already joined!") -> None:
        super().__init__(message)

class NotJoinedError(QueueError):
    """Raised when leave() is called while there is no queue to leave."""
    def __init__(self, message: str = "There's no queue to leave!") -> None:
        super().__init__(message)

class TransportError(QueueError):
    """
    A request failed in the transport: an error response from the peer,
    a timeout or a lost connection.

    Attributes:
        condition: stanza error condition ('service-unavailable', ...),
                   or 'timeout' / 'disconnected' for local failures
        stanza: the error response, when there is one
    """
    def __init__(self, message: str, condition: Optional[str] = None,
                 stanza: Optional["Stanza"] = None) -> None:
        super().__init__(message)
        self.condition = condition
        self.stanza = stanza

    @classmethod
    def from_stanza(cls, stanza: "Stanza") -> 'TransportError':
        condition = stanza.error_condition() or "undefined-condition"
        return cls(f"Request {stanza.id} failed: {condition}", condition=condition, stanza=stanza)

    @classmethod
    def wrap(cls, error: Any) -> 'TransportError':
        """Pass TransportErrors through, wrap error stanzas and anything else"""
        from shared.stanza import Stanza

        if isinstance(error, TransportError):
            return error
        if isinstance(error, Stanza):
            return cls.from_stanza(error)
        wrapped = cls(str(error) or type(error).__name__)
        if isinstance(error, BaseException):
            wrapped.__cause__ = error
        return wrapped
