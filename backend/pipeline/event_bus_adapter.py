"""
Event Bus Adapter
=================
Outbound domain events for the order pipeline.

Features:
- Publisher/Subscriber interfaces over typed events (schemas.event_definitions)
- In-memory bus for single-process deployments and tests
- RabbitMQ topic exchange with dead-letter exchange (aio-pika)
- Circuit breaker around publishing
- EventPublisherMixin: publishing never raises into the pipeline

pip install pydantic aio-pika structlog
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional

import aio_pika
import structlog
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue

from schemas.commerce import utcnow
from schemas.event_definitions import BaseEvent, EventType


# =============================================================================
# CONFIGURATION
# =============================================================================

class EventBusSettings:
    EXCHANGE_NAME: str = "handyland.orders"
    DLX_EXCHANGE_NAME: str = "handyland.orders.dlx"
    DLX_QUEUE_NAME: str = "handyland.orders.dead_letters"

    CB_FAILURE_THRESHOLD: int = 5
    CB_RESET_TIMEOUT_SECONDS: float = 30.0

    MESSAGE_TTL_MS: int = 86400000  # 24 hours
    PREFETCH_COUNT: int = 10


settings = EventBusSettings()


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker for connection resilience"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = settings.CB_FAILURE_THRESHOLD,
        reset_timeout: float = settings.CB_RESET_TIMEOUT_SECONDS,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self._last_failure_time:
                    elapsed = (utcnow() - self._last_failure_time).total_seconds()
                    if elapsed >= self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._logger.info("circuit_half_open", elapsed=elapsed)
                        return True
                return False
            # HALF_OPEN: allow one probe
            return True

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._failures = 0

    async def record_failure(self, error: Exception = None):
        async with self._lock:
            self._failures += 1
            self._last_failure_time = utcnow()
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))


def with_circuit_breaker(func):
    """Wrap a bus method with the instance's `_circuit_breaker`"""
    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        breaker: CircuitBreaker = self._circuit_breaker
        if not await breaker.can_execute():
            raise ConnectionError(f"Circuit breaker {breaker.name} is OPEN")
        try:
            result = await func(self, *args, **kwargs)
            await breaker.record_success()
            return result
        except Exception as e:
            await breaker.record_failure(e)
            raise
    return wrapper


# =============================================================================
# EVENT BUS INTERFACES
# =============================================================================

EventHandler = Callable[[BaseEvent], Any]


class IEventBus(ABC):
    """Combined publisher/subscriber interface"""

    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    async def disconnect(self) -> bool:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass

    @abstractmethod
    async def publish(self, event: BaseEvent) -> bool:
        pass

    @abstractmethod
    async def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        queue_name: Optional[str] = None,
    ) -> str:
        """Subscribe to events, return subscription ID"""
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        pass


# =============================================================================
# IN-MEMORY EVENT BUS
# =============================================================================

class InMemoryEventBus(IEventBus):
    """
    Dispatches to subscribers inline. Handler failures are logged per
    subscription and never reach the publisher.
    """

    def __init__(self):
        self._handlers: dict[EventType, list[tuple[str, EventHandler]]] = defaultdict(list)
        self._events: list[BaseEvent] = []
        self._connected = False
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="inmemory_event_bus")

    async def connect(self) -> bool:
        self._connected = True
        self._logger.info("connected")
        return True

    async def disconnect(self) -> bool:
        self._connected = False
        self._logger.info("disconnected")
        return True

    async def health_check(self) -> bool:
        return self._connected

    async def publish(self, event: BaseEvent) -> bool:
        if not self._connected:
            raise ConnectionError("Event bus not connected")

        async with self._lock:
            self._events.append(event)
            handlers = list(self._handlers.get(event.event_type, []))

        for sub_id, handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                self._logger.error("handler_error",
                                   event_type=event.event_type.value,
                                   subscription_id=sub_id,
                                   error=str(e))

        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          handlers_notified=len(handlers))
        return True

    async def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        queue_name: Optional[str] = None,
    ) -> str:
        subscription_id = str(uuid.uuid4())
        async with self._lock:
            for event_type in event_types:
                self._handlers[event_type].append((subscription_id, handler))
        self._logger.info("subscribed",
                          subscription_id=subscription_id,
                          event_types=[et.value for et in event_types])
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        async with self._lock:
            for event_type in list(self._handlers.keys()):
                self._handlers[event_type] = [
                    (sid, h) for sid, h in self._handlers[event_type]
                    if sid != subscription_id
                ]
        self._logger.info("unsubscribed", subscription_id=subscription_id)
        return True

    # Testing utilities
    def get_published_events(self, event_type: Optional[EventType] = None) -> list[BaseEvent]:
        return [e for e in self._events if event_type is None or e.event_type == event_type]

    def clear_events(self):
        self._events.clear()


# =============================================================================
# RABBITMQ EVENT BUS
# =============================================================================

class RabbitMQEventBus(IEventBus):
    """
    RabbitMQ event bus with:
    - Topic exchange routed by event type
    - Dead letter exchange for handler failures
    - Circuit breaker on publish
    """

    def __init__(self, url: str, exchange_name: str = settings.EXCHANGE_NAME):
        self._url = url
        self._exchange_name = exchange_name
        self._connection: Optional[AbstractConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._subscriptions: dict[str, AbstractQueue] = {}
        self._circuit_breaker = CircuitBreaker("rabbitmq_publish")
        self._logger = structlog.get_logger().bind(component="rabbitmq_event_bus")

    async def connect(self) -> bool:
        self._connection = await aio_pika.connect_robust(self._url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=settings.PREFETCH_COUNT)

        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )
        dlx = await self._channel.declare_exchange(
            settings.DLX_EXCHANGE_NAME,
            ExchangeType.FANOUT,
            durable=True,
        )
        dlq = await self._channel.declare_queue(settings.DLX_QUEUE_NAME, durable=True)
        await dlq.bind(dlx)

        self._logger.info("connected", exchange=self._exchange_name, dlx=settings.DLX_EXCHANGE_NAME)
        return True

    async def disconnect(self) -> bool:
        for sub_id, queue in list(self._subscriptions.items()):
            await queue.cancel(sub_id)
        self._subscriptions.clear()
        if self._channel and not self._channel.is_closed:
            await self._channel.close()
        if self._connection and not self._connection.is_closed:
            await self._connection.close()
        self._logger.info("disconnected")
        return True

    async def health_check(self) -> bool:
        if not self._connection or self._connection.is_closed:
            return False
        if not self._channel or self._channel.is_closed:
            return False
        return True

    @with_circuit_breaker
    async def publish(self, event: BaseEvent) -> bool:
        if not await self.health_check():
            raise ConnectionError("RabbitMQ not connected")

        message = Message(
            body=event.to_message_body(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            correlation_id=event.correlation_id,
            message_id=event.event_id,
            timestamp=event.timestamp,
            priority=event.priority.value,
            headers={
                "event_type": event.event_type.value,
                "source": event.source,
                "version": event.version,
            },
            expiration=settings.MESSAGE_TTL_MS / 1000,
        )
        await self._exchange.publish(message, routing_key=event.routing_key)

        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          routing_key=event.routing_key)
        return True

    async def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        queue_name: Optional[str] = None,
    ) -> str:
        if not await self.health_check():
            raise ConnectionError("RabbitMQ not connected")

        subscription_id = str(uuid.uuid4())
        queue_name = queue_name or f"sub_{subscription_id[:8]}"

        queue = await self._channel.declare_queue(
            queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": settings.DLX_EXCHANGE_NAME,
                "x-message-ttl": settings.MESSAGE_TTL_MS,
            },
        )
        for event_type in event_types:
            await queue.bind(self._exchange, routing_key=event_type.value)

        async def on_message(message: aio_pika.abc.AbstractIncomingMessage):
            # requeue=False: a failing handler dead-letters the message
            async with message.process(requeue=False):
                event = BaseEvent.from_message_body(message.body)
                self._logger.info("event_received",
                                  event_type=event.event_type.value,
                                  event_id=event.event_id)
                await handler(event)

        await queue.consume(on_message, consumer_tag=subscription_id)
        self._subscriptions[subscription_id] = queue

        self._logger.info("subscribed",
                          subscription_id=subscription_id,
                          queue=queue_name,
                          event_types=[et.value for et in event_types])
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        queue = self._subscriptions.pop(subscription_id, None)
        if queue is None:
            return False
        await queue.cancel(subscription_id)
        self._logger.info("unsubscribed", subscription_id=subscription_id)
        return True


# =============================================================================
# FACTORY
# =============================================================================

def create_event_bus(rabbitmq_url: Optional[str] = None) -> IEventBus:
    """RabbitMQ when a URL is configured, in-memory otherwise"""
    if rabbitmq_url:
        return RabbitMQEventBus(rabbitmq_url)
    return InMemoryEventBus()


# =============================================================================
# PIPELINE MIXIN
# =============================================================================

class EventPublisherMixin:
    """
    Gives a pipeline component `publish_event`. Events are published after
    the state change they describe is persisted; a broken bus is logged and
    never fails the operation that triggered it.
    """

    _event_bus: Optional[IEventBus] = None

    def init_event_bus(self, event_bus: Optional[IEventBus] = None):
        self._event_bus = event_bus

    async def publish_event(self, event: BaseEvent) -> bool:
        if self._event_bus is None:
            return False
        try:
            return await self._event_bus.publish(event)
        except Exception as e:
            structlog.get_logger().bind(component="event_publisher").error(
                "event_publish_failed",
                event_type=event.event_type.value,
                event_id=event.event_id,
                correlation_id=event.correlation_id,
                error=str(e),
            )
            return False
