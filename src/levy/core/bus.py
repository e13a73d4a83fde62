"""In-process communication bus.

``CommunicationBus`` is a synchronous fan-out pub/sub router with a bounded
audit log and correlation-based response waiters. Delivery is at-most-once
and never persisted or replayed. ``ResilientBus`` wraps it so every
point-to-point send runs through the destination's circuit breaker.
"""

import asyncio
import inspect
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from levy.schemas.messages import MessageEnvelope
from levy.schemas.types import BROADCAST, AgentType, CircuitState, MessageType, Priority
from levy.utils.circuit_breaker import CircuitBreakerRegistry
from levy.utils.errors import (
    CircuitOpenError,
    DeliveryError,
    OrchestrationError,
    TimeoutError,
)
from levy.utils.telemetry import (
    MonotonicClock,
    get_logger,
    record_bus_message,
    record_handler_error,
)

from .protocol import create_message

MessageHandler = Callable[[MessageEnvelope], Any]

_UNSET: Any = object()


@dataclass
class SendResult:
    """Outcome of a point-to-point or broadcast send."""

    success: bool
    message_id: str
    error: str | None = None
    circuit_open: bool = False
    deliveries: int = 0


class _Subscriber:
    __slots__ = ("active", "handler", "key", "name")

    def __init__(self, key: str, handler: MessageHandler, name: str) -> None:
        self.key = key
        self.handler = handler
        self.name = name
        self.active = True


class Subscription:
    """Token returned by ``subscribe``; call ``unsubscribe`` to detach."""

    def __init__(self, bus: "CommunicationBus", subscriber: _Subscriber) -> None:
        self._bus = bus
        self._subscriber = subscriber

    @property
    def key(self) -> str:
        return self._subscriber.key

    @property
    def active(self) -> bool:
        return self._subscriber.active

    def unsubscribe(self) -> bool:
        """Detach the handler. Returns False if it was already detached."""
        return self._bus._remove(self._subscriber)


class CommunicationBus:
    """Pub/sub router keyed by agent id.

    Requirements addressed:
    - Handlers for a key run in registration order
    - Broadcast reaches every key except the source, once per handler
    - Handler exceptions are logged and never reach the publisher
    - A bounded audit log keeps the most recent messages
    """

    def __init__(self, history_size: int = 1000, name: str = "bus") -> None:
        """Initialize the bus.

        Args:
            history_size: Capacity of the audit log
            name: Bus name used in logs
        """
        self.name = name
        self._subscribers: dict[str, list[_Subscriber]] = {}
        self._history: deque[MessageEnvelope] = deque(maxlen=history_size)
        self._response_waiters: dict[str, list[asyncio.Future[MessageEnvelope]]] = {}
        self._pending_handlers: set[asyncio.Task[Any]] = set()
        self._stats = {
            "published": 0,
            "delivered": 0,
            "undelivered": 0,
            "expired": 0,
            "handler_errors": 0,
        }
        self._logger = get_logger("levy.bus", bus=name)

    def subscribe(
        self, key: str, handler: MessageHandler, name: str | None = None
    ) -> Subscription:
        """Register ``handler`` for messages addressed to ``key``.

        Args:
            key: Agent id or 'broadcast'
            handler: Sync callable or coroutine function taking the envelope
            name: Subscriber name used in logs and metrics

        Returns:
            Subscription token
        """
        subscriber = _Subscriber(key, handler, name or key)
        self._subscribers.setdefault(key, []).append(subscriber)
        self._logger.debug("Handler subscribed", key=key, subscriber=subscriber.name)
        return Subscription(self, subscriber)

    def _remove(self, subscriber: _Subscriber) -> bool:
        if not subscriber.active:
            return False
        subscriber.active = False
        handlers = self._subscribers.get(subscriber.key, [])
        if subscriber in handlers:
            handlers.remove(subscriber)
        if not handlers:
            self._subscribers.pop(subscriber.key, None)
        self._logger.debug(
            "Handler unsubscribed", key=subscriber.key, subscriber=subscriber.name
        )
        return True

    def has_subscribers(self, key: str) -> bool:
        return bool(self._subscribers.get(key))

    def subscriber_keys(self) -> list[str]:
        return list(self._subscribers)

    def publish(self, message: MessageEnvelope) -> int:
        """Deliver a message synchronously to its subscribers.

        Async handlers are scheduled on the running loop; their completion is
        not awaited here.

        Args:
            message: Envelope to deliver

        Returns:
            Number of deliveries (handlers invoked plus response waiters resolved)
        """
        if message.is_expired():
            self._stats["expired"] += 1
            record_bus_message(message.type.value, "expired")
            self._logger.debug(
                "Dropped expired message",
                message_id=message.id,
                message_type=message.type.value,
            )
            return 0

        self._stats["published"] += 1
        self._history.append(message)

        deliveries = 0
        for subscriber in self._targets(message):
            if subscriber.active:
                self._invoke(subscriber, message)
                deliveries += 1

        if message.correlation_id is not None:
            deliveries += self._resolve_waiters(message)

        if deliveries:
            self._stats["delivered"] += 1
            record_bus_message(message.type.value, "delivered")
        else:
            self._stats["undelivered"] += 1
            record_bus_message(message.type.value, "undelivered")
            self._logger.debug(
                "Message had no subscribers",
                message_id=message.id,
                destination=message.destination,
                message_type=message.type.value,
            )
        return deliveries

    async def send(
        self, message: MessageEnvelope, timeout: float | None = None
    ) -> SendResult:
        """Publish and report the outcome as a SendResult.

        A point-to-point message that reaches nobody is reported as failed.
        """
        deliveries = self.publish(message)
        if deliveries == 0 and message.destination != BROADCAST:
            error = DeliveryError(message.destination, message.id)
            return SendResult(False, message.id, error=str(error))
        return SendResult(True, message.id, deliveries=deliveries)

    async def request(
        self, message: MessageEnvelope, timeout: float = 10.0
    ) -> MessageEnvelope:
        """Publish ``message`` and wait for the first correlated reply.

        Raises:
            DeliveryError: If nobody received the request
            TimeoutError: If no reply arrived in time
        """
        if not message.requires_response:
            message = message.model_copy(update={"requires_response": True})

        future = self.expect_response(message.id)
        result = await self.send(message)
        if not result.success:
            self.cancel_response(message.id, future)
            raise DeliveryError(message.destination, message.id)
        return await self.await_response(message.id, future, timeout)

    def expect_response(self, message_id: str) -> "asyncio.Future[MessageEnvelope]":
        """Register a waiter resolved by the first reply correlated to ``message_id``.

        Register before publishing the request so synchronous replies are
        not missed.
        """
        future: asyncio.Future[MessageEnvelope] = (
            asyncio.get_running_loop().create_future()
        )
        self._response_waiters.setdefault(message_id, []).append(future)
        return future

    def cancel_response(
        self, message_id: str, future: "asyncio.Future[MessageEnvelope]"
    ) -> None:
        waiters = self._response_waiters.get(message_id)
        if waiters and future in waiters:
            waiters.remove(future)
            if not waiters:
                self._response_waiters.pop(message_id, None)
        if not future.done():
            future.cancel()

    async def await_response(
        self,
        message_id: str,
        future: "asyncio.Future[MessageEnvelope]",
        timeout: float,
    ) -> MessageEnvelope:
        """Await a waiter created by ``expect_response``."""
        started = MonotonicClock.now()
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            elapsed_ms = (MonotonicClock.now() - started) * 1000
            raise TimeoutError(
                f"response to {message_id}", timeout * 1000, elapsed_ms
            ) from e
        finally:
            self.cancel_response(message_id, future)

    async def wait_for_response(
        self, message_id: str, timeout: float = 10.0
    ) -> MessageEnvelope:
        """Wait for the first reply correlated to an already published message."""
        future = self.expect_response(message_id)
        return await self.await_response(message_id, future, timeout)

    def get_message_history(
        self, limit: int | None = None, message_type: MessageType | None = None
    ) -> list[MessageEnvelope]:
        """Return logged messages, oldest first."""
        messages = [
            m for m in self._history if message_type is None or m.type == message_type
        ]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def find_message(self, message_id: str) -> MessageEnvelope | None:
        for message in reversed(self._history):
            if message.id == message_id:
                return message
        return None

    def find_by_correlation(self, correlation_id: str) -> list[MessageEnvelope]:
        return [m for m in self._history if m.correlation_id == correlation_id]

    def clear_history(self) -> None:
        self._history.clear()

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "subscriber_keys": len(self._subscribers),
            "history_size": len(self._history),
            "history_capacity": self._history.maxlen,
            "pending_handlers": len(self._pending_handlers),
        }

    async def drain(self) -> None:
        """Wait until all scheduled async handlers have finished."""
        while self._pending_handlers:
            await asyncio.gather(*list(self._pending_handlers), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding handler tasks and response waiters."""
        for task in list(self._pending_handlers):
            task.cancel()
        await self.drain()
        for waiters in self._response_waiters.values():
            for future in waiters:
                if not future.done():
                    future.cancel()
        self._response_waiters.clear()

    def _targets(self, message: MessageEnvelope) -> list[_Subscriber]:
        if message.destination != BROADCAST:
            return list(self._subscribers.get(message.destination, []))

        # Bound methods compare equal per instance, so an agent subscribed
        # under its own id and under 'broadcast' is reached once.
        excluded = [s.handler for s in self._subscribers.get(message.source, [])]
        seen: list[MessageHandler] = []
        targets = []
        for key, subscribers in list(self._subscribers.items()):
            if key == message.source:
                continue
            for subscriber in subscribers:
                handler = subscriber.handler
                if handler in excluded or handler in seen:
                    continue
                seen.append(handler)
                targets.append(subscriber)
        return targets

    def _invoke(self, subscriber: _Subscriber, message: MessageEnvelope) -> None:
        try:
            result = subscriber.handler(message)
        except Exception as e:
            self._handler_failed(subscriber, message, e)
            return

        if not inspect.isawaitable(result):
            return

        try:
            task = asyncio.ensure_future(result, loop=asyncio.get_running_loop())
        except RuntimeError as e:
            if inspect.iscoroutine(result):
                result.close()
            self._handler_failed(subscriber, message, e)
            return

        self._pending_handlers.add(task)
        task.add_done_callback(
            lambda t: self._handler_done(t, subscriber, message)
        )

    def _handler_done(
        self, task: asyncio.Task[Any], subscriber: _Subscriber, message: MessageEnvelope
    ) -> None:
        self._pending_handlers.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._handler_failed(subscriber, message, error)

    def _handler_failed(
        self, subscriber: _Subscriber, message: MessageEnvelope, error: BaseException
    ) -> None:
        self._stats["handler_errors"] += 1
        record_handler_error(subscriber.name)
        self._logger.error(
            "Message handler failed",
            subscriber=subscriber.name,
            message_id=message.id,
            message_type=message.type.value,
            error=str(error),
            error_type=type(error).__name__,
        )

    def _resolve_waiters(self, message: MessageEnvelope) -> int:
        waiters = self._response_waiters.pop(message.correlation_id or "", [])
        resolved = 0
        for future in waiters:
            if not future.done():
                future.set_result(message)
                resolved += 1
        return resolved


class FaultKind(str, Enum):
    """Faults the resilient bus can inject on sends to a destination."""

    TIMEOUT = "timeout"
    ERROR = "error"
    PARTITION = "partition"


@dataclass
class _Fault:
    kind: FaultKind
    delay: float


class ResilientBus:
    """Bus wrapper that sends every point-to-point message through a breaker.

    Exposes the same ``subscribe``/``publish``/``send``/``request`` surface as
    ``CommunicationBus`` so agents and the orchestrator work with either.
    """

    def __init__(
        self,
        bus: CommunicationBus,
        registry: CircuitBreakerRegistry,
        source_id: str = AgentType.MCP.value,
        announce_breaker_changes: bool = True,
    ) -> None:
        """Initialize the resilient bus.

        Args:
            bus: Underlying bus
            registry: Breaker registry keyed by destination
            source_id: Source id used for circuit breaker status broadcasts
            announce_breaker_changes: Broadcast CIRCUIT_BREAKER_STATUS on
                breaker state changes
        """
        self.bus = bus
        self.registry = registry
        self.source_id = source_id
        self._faults: dict[str, _Fault] = {}
        self._logger = get_logger("levy.bus.resilient", bus=bus.name)
        if announce_breaker_changes:
            registry.add_listener(self._on_breaker_state_change)

    @property
    def name(self) -> str:
        return self.bus.name

    def subscribe(
        self, key: str, handler: MessageHandler, name: str | None = None
    ) -> Subscription:
        return self.bus.subscribe(key, handler, name)

    def publish(self, message: MessageEnvelope) -> int:
        """Publish without breaker protection."""
        return self.bus.publish(message)

    async def send(
        self, message: MessageEnvelope, timeout: float | None = _UNSET
    ) -> SendResult:
        """Send a message through the destination's circuit breaker.

        Broadcasts bypass breakers. A point-to-point send that reaches no
        subscriber counts as a breaker failure.

        Args:
            message: Envelope to send
            timeout: Per-call timeout override (defaults to the breaker's)

        Returns:
            SendResult describing the outcome; send failures are reported,
            not raised
        """
        if message.destination == BROADCAST:
            return SendResult(True, message.id, deliveries=self.bus.publish(message))

        breaker = self.registry.get_breaker(message.destination)
        kwargs = {} if timeout is _UNSET else {"timeout": timeout}
        try:
            deliveries = await breaker.execute(self._deliver, message, **kwargs)
        except CircuitOpenError as e:
            self._logger.debug(
                "Send rejected by open circuit",
                message_id=message.id,
                destination=message.destination,
            )
            return SendResult(False, message.id, error=str(e), circuit_open=True)
        except OrchestrationError as e:
            self._logger.warning(
                "Send failed",
                message_id=message.id,
                destination=message.destination,
                message_type=message.type.value,
                error=str(e),
                circuit_state=breaker.state.value,
            )
            return SendResult(
                False, message.id, error=str(e), circuit_open=breaker.is_open
            )

        return SendResult(True, message.id, deliveries=deliveries)

    async def request(
        self, message: MessageEnvelope, timeout: float = 10.0
    ) -> MessageEnvelope:
        """Send ``message`` through its breaker and wait for the correlated reply.

        Raises:
            CircuitOpenError: If the destination's breaker rejected the send
            DeliveryError: If the send failed for another reason
            TimeoutError: If no reply arrived in time
        """
        if not message.requires_response:
            message = message.model_copy(update={"requires_response": True})

        future = self.bus.expect_response(message.id)
        result = await self.send(message)
        if not result.success:
            self.bus.cancel_response(message.id, future)
            breaker = self.registry.get_breaker(message.destination)
            if result.circuit_open:
                raise CircuitOpenError(
                    message.destination,
                    breaker.failure_count,
                    breaker.options.failure_threshold,
                )
            raise DeliveryError(
                message.destination, message.id, result.error or "send failed"
            )
        return await self.bus.await_response(message.id, future, timeout)

    def inject_fault(
        self, destination: str, kind: FaultKind | str, delay: float | None = None
    ) -> None:
        """Make sends to ``destination`` misbehave until ``clear_fault``.

        Args:
            destination: Destination key
            kind: timeout (send stalls for ``delay``), error (send raises) or
                partition (send reaches nobody)
            delay: Stall duration for timeout faults; defaults to twice the
                destination breaker's timeout
        """
        fault_kind = FaultKind(kind)
        if delay is None:
            breaker_timeout = self.registry.get_breaker(destination).options.timeout
            delay = (breaker_timeout or 5.0) * 2
        self._faults[destination] = _Fault(fault_kind, delay)
        self._logger.info(
            "Fault injected", destination=destination, kind=fault_kind.value, delay=delay
        )

    def clear_fault(self, destination: str | None = None) -> None:
        """Remove the fault for ``destination``, or all faults when omitted."""
        if destination is None:
            self._faults.clear()
        else:
            self._faults.pop(destination, None)
        self._logger.info("Fault cleared", destination=destination or "all")

    def active_faults(self) -> dict[str, str]:
        return {dest: fault.kind.value for dest, fault in self._faults.items()}

    def get_circuit_status(self) -> dict[str, dict[str, Any]]:
        return self.registry.get_all_stats()

    async def _deliver(self, message: MessageEnvelope) -> int:
        fault = self._faults.get(message.destination)
        if fault is not None:
            if fault.kind == FaultKind.TIMEOUT:
                await asyncio.sleep(fault.delay)
            elif fault.kind == FaultKind.ERROR:
                raise DeliveryError(message.destination, message.id, "injected error")
            else:
                raise DeliveryError(message.destination, message.id, "partitioned")

        deliveries = self.bus.publish(message)
        if deliveries == 0:
            raise DeliveryError(message.destination, message.id)
        return deliveries

    def _on_breaker_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        breaker = self.registry.find_breaker(name)
        self.bus.publish(
            create_message(
                self.source_id,
                BROADCAST,
                MessageType.CIRCUIT_BREAKER_STATUS,
                {
                    "breaker": name,
                    "state": new.value,
                    "previous_state": old.value,
                    "failure_count": breaker.failure_count if breaker else 0,
                },
                priority=Priority.HIGH,
            )
        )
