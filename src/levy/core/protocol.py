"""Message protocol helpers: identifiers, envelope construction and error replies."""

import time
import uuid
from typing import Any

from levy.schemas.messages import MessageEnvelope
from levy.schemas.types import MessageType, Priority, StatusCode
from levy.utils.errors import OrchestrationError


def create_message_id() -> str:
    """Create a collision-free message identifier."""
    return f"msg_{uuid.uuid4().hex}"


def create_task_id() -> str:
    """Create a collision-free task identifier."""
    return f"task_{uuid.uuid4().hex}"


def create_message(
    source: str,
    destination: str,
    message_type: MessageType,
    payload: dict[str, Any] | None = None,
    *,
    priority: Priority = Priority.MEDIUM,
    correlation_id: str | None = None,
    requires_response: bool = False,
    ttl: float | None = None,
) -> MessageEnvelope:
    """Build an envelope with a fresh id and timestamp.

    Args:
        source: Sender id
        destination: Receiver id or 'broadcast'
        message_type: Message kind
        payload: Message body
        priority: Message priority
        correlation_id: Id of the message this one answers
        requires_response: Whether the sender expects a correlated reply
        ttl: Seconds until the message expires (None for no expiry)

    Returns:
        The new envelope
    """
    now = time.time()
    return MessageEnvelope(
        id=create_message_id(),
        timestamp=now,
        source=source,
        destination=destination,
        type=message_type,
        priority=priority,
        payload=payload or {},
        correlation_id=correlation_id,
        requires_response=requires_response,
        expires_at=now + ttl if ttl is not None else None,
    )


def create_response(
    original: MessageEnvelope,
    message_type: MessageType,
    payload: dict[str, Any] | None = None,
    *,
    source: str | None = None,
    priority: Priority | None = None,
) -> MessageEnvelope:
    """Build a reply to ``original`` correlated by its id."""
    return create_message(
        source=source or original.destination,
        destination=original.source,
        message_type=message_type,
        payload=payload,
        priority=priority or original.priority,
        correlation_id=original.id,
    )


def create_error_response(
    original: MessageEnvelope,
    error: BaseException | str,
    code: StatusCode = StatusCode.SYSTEM_ERROR,
    *,
    source: str | None = None,
) -> MessageEnvelope:
    """Build an ERROR reply to ``original``.

    The reply goes back to the original sender, correlated by the original
    message id, at HIGH priority.
    """
    payload: dict[str, Any] = {
        "error": str(error),
        "error_code": code.value,
        "original_message_id": original.id,
        "original_message_type": original.type.value,
    }
    if isinstance(error, OrchestrationError):
        payload["error_type"] = error.code

    return create_response(
        original,
        MessageType.ERROR,
        payload,
        source=source,
        priority=Priority.HIGH,
    )
