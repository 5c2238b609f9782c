# File: src/fleetpark/infrastructure/messaging.py
"""
Messaging Infrastructure for the Reservation Engine

Lifecycle events leave the engine through a MessageBus that fans them out to:
1. EventBus - in-process publish/subscribe for handlers living in the
   same process
2. MessageQueue - Redis pub/sub (or an in-memory queue in tests) for
   consumers in other processes, such as the notification sender
3. Event store - MongoDB audit log of every event, queried per reservation

The engine only emits. Delivery of e-mails, push or in-app notifications
is the job of whoever reads the queue. Publishing is best effort: the
reservation change is already committed when an event is published, so a
failing channel is logged and never raised back to the caller.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple
import json
import logging
import threading
import time
import uuid

import pymongo
import redis

from ..domain.events import (
    DomainEvent,
    PaymentReceived,
    ReservationCancelled,
    ReservationCompleted,
    ReservationConfirmed,
    ReservationCreated,
    ReservationEvent,
    ReservationStarted,
)


Envelope = Dict[str, Any]

WILDCARD = "*"


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handlers subscribe to an event type such as ``reservation.confirmed``
    or to ``*`` for every event. A failing handler is logged and does not
    stop the others.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
        self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type}")

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        """Unsubscribe handler from events"""
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
                self._logger.debug(f"Unsubscribed {handler.__class__.__name__} from {event_type}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.info(f"Publishing event: {event.event_type} (ID: {event.event_id})")

        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, []))
            handlers += [h for h in self._subscribers.get(WILDCARD, []) if h not in handlers]

        for handler in handlers:
            if handler.can_handle(event):
                try:
                    handler.handle(event)
                    self._logger.debug(f"Event handled by {handler.__class__.__name__}")
                except Exception as e:
                    self._logger.error(
                        f"Error handling event {event.event_type} with {handler.__class__.__name__}: {e}"
                    )

    def clear_subscribers(self) -> None:
        """Clear all subscribers (for testing)"""
        with self._lock:
            self._subscribers.clear()


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Abstract base class for topic-based message queues carrying event envelopes"""

    @abstractmethod
    def publish(self, topic: str, message: Envelope) -> bool:
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Envelope], None]) -> str:
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        pass

    def close(self) -> None:
        pass


# ============================================================================
# REDIS MESSAGE QUEUE
# ============================================================================

class RedisMessageQueue(MessageQueue):
    """
    Redis-based message queue using Pub/Sub

    Connection errors propagate from publish so MessageBus can retry them.
    Incoming messages are dispatched by redis-py's own worker thread,
    started on the first subscription.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        client: Optional[redis.Redis] = None,
        **kwargs
    ):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.redis_client = client or redis.Redis.from_url(redis_url, **kwargs)
        self.pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)

        self._subscriptions: Dict[str, Tuple[str, Callable[[Envelope], None]]] = {}
        self._worker = None

    def publish(self, topic: str, message: Envelope) -> bool:
        """Publish a message to a Redis channel"""
        receivers = self.redis_client.publish(topic, json.dumps(message, default=str))
        self._logger.debug(f"Published message to {topic}: {message.get('event_id')} ({receivers} receivers)")
        # Pub/sub drops messages nobody listens to; that is still a successful publish
        return True

    def subscribe(self, topic: str, callback: Callable[[Envelope], None]) -> str:
        subscription_id = str(uuid.uuid4())
        self._subscriptions[subscription_id] = (topic, callback)
        self.pubsub.subscribe(**{topic: self._handle_message})

        if self._worker is None:
            self._worker = self.pubsub.run_in_thread(sleep_time=1.0, daemon=True)
            self._logger.info("Started Redis message listener")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        entry = self._subscriptions.pop(subscription_id, None)
        if entry is None:
            return False

        topic = entry[0]
        if all(t != topic for t, _ in self._subscriptions.values()):
            self.pubsub.unsubscribe(topic)
        return True

    def _handle_message(self, redis_message: Dict[str, Any]) -> None:
        topic = redis_message['channel']
        if isinstance(topic, bytes):
            topic = topic.decode('utf-8')

        try:
            envelope = json.loads(redis_message['data'])
        except ValueError as e:
            self._logger.error(f"Discarding malformed message on {topic}: {e}")
            return

        for subscribed_topic, callback in list(self._subscriptions.values()):
            if subscribed_topic != topic:
                continue
            try:
                callback(envelope)
            except Exception as e:
                self._logger.error(f"Error in callback for topic {topic}: {e}")

    def close(self) -> None:
        if self._worker is not None:
            self._worker.stop()
            self._worker = None
        self.pubsub.close()
        self.redis_client.close()
        self._logger.info("Redis message queue closed")


# ============================================================================
# IN-MEMORY MESSAGE QUEUE (For Testing)
# ============================================================================

class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue for testing; keeps every published message"""

    def __init__(self):
        self._callbacks: Dict[str, Dict[str, Callable[[Envelope], None]]] = {}  # topic -> id -> callback
        self._messages: Dict[str, List[Envelope]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Envelope) -> bool:
        with self._lock:
            self._messages.setdefault(topic, []).append(message)
            callbacks = list(self._callbacks.get(topic, {}).values())

        for callback in callbacks:
            try:
                callback(message)
            except Exception as e:
                self._logger.error(f"Error in callback for topic {topic}: {e}")

        self._logger.debug(f"Published to {topic}: {message.get('event_id')}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Envelope], None]) -> str:
        subscription_id = str(uuid.uuid4())
        with self._lock:
            self._callbacks.setdefault(topic, {})[subscription_id] = callback
        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            for callbacks in self._callbacks.values():
                if subscription_id in callbacks:
                    del callbacks[subscription_id]
                    return True
        return False

    def get_messages(self, topic: str) -> List[Envelope]:
        """Get all messages for a topic (for testing)"""
        with self._lock:
            return list(self._messages.get(topic, []))

    def clear(self):
        """Clear all messages and subscriptions (for testing)"""
        with self._lock:
            self._callbacks.clear()
            self._messages.clear()


# ============================================================================
# EVENT STORE
# ============================================================================

class MongoEventStore:
    """
    Audit log of reservation events in MongoDB

    One document per event, holding the full envelope plus
    ``aggregate_id`` (the reservation id) for per-reservation history.
    """

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        database: str = "fleetpark",
        collection: str = "reservation_events",
        client: Optional[pymongo.MongoClient] = None,
        **kwargs
    ):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.client = client or pymongo.MongoClient(mongo_url, **kwargs)
        self.events_collection = self.client[database][collection]
        self._indexes_created = False

    def _ensure_indexes(self) -> None:
        if self._indexes_created:
            return
        self.events_collection.create_index([('event_id', pymongo.ASCENDING)], unique=True)
        self.events_collection.create_index([('aggregate_id', pymongo.ASCENDING), ('timestamp', pymongo.ASCENDING)])
        self.events_collection.create_index([('event_type', pymongo.ASCENDING)])
        self._indexes_created = True

    def save(self, event: DomainEvent) -> bool:
        """Save a domain event to the store"""
        self._ensure_indexes()
        document = event.to_dict()
        result = self.events_collection.insert_one(document)
        self._logger.debug(f"Saved event {event.event_type} for aggregate {document.get('aggregate_id')}")
        return result.acknowledged

    def get_events_for_aggregate(self, aggregate_id: str) -> List[Envelope]:
        """All events of one reservation, oldest first"""
        cursor = self.events_collection.find(
            {'aggregate_id': aggregate_id}, {'_id': 0}
        ).sort('timestamp', pymongo.ASCENDING)
        return list(cursor)

    def get_events_by_type(self, event_type: str, limit: int = 100) -> List[Envelope]:
        cursor = self.events_collection.find(
            {'event_type': event_type}, {'_id': 0}
        ).sort('timestamp', pymongo.DESCENDING).limit(limit)
        return list(cursor)

    def close(self) -> None:
        self.client.close()


class InMemoryEventStore:
    """Event store keeping envelopes in a list (for testing)"""

    def __init__(self):
        self._events: List[Envelope] = []
        self._lock = threading.Lock()

    def save(self, event: DomainEvent) -> bool:
        with self._lock:
            self._events.append(event.to_dict())
        return True

    def get_events_for_aggregate(self, aggregate_id: str) -> List[Envelope]:
        with self._lock:
            return [e for e in self._events if e.get('aggregate_id') == aggregate_id]

    def get_events_by_type(self, event_type: str, limit: int = 100) -> List[Envelope]:
        with self._lock:
            matches = [e for e in self._events if e['event_type'] == event_type]
        return list(reversed(matches))[:limit]

    def close(self) -> None:
        pass


# ============================================================================
# NOTIFICATION HANDLER
# ============================================================================

class NotificationEventHandler(EventHandler):
    """
    Turns lifecycle events into notification messages on the queue

    The message names the notification type the console understands
    (RESERVATION_CONFIRMED, PAYMENT_RECEIVED, ...) and who should see it.
    Sending it is left to the notification service reading the topic.
    """

    NOTIFICATION_TYPES = {
        ReservationCreated: ("RESERVATION_CREATED", "Reservation created"),
        ReservationConfirmed: ("RESERVATION_CONFIRMED", "Reservation confirmed"),
        ReservationStarted: ("RESERVATION_STARTED", "Vehicle checked in"),
        ReservationCompleted: ("RESERVATION_COMPLETED", "Reservation completed"),
        ReservationCancelled: ("RESERVATION_CANCELLED", "Reservation cancelled"),
        PaymentReceived: ("PAYMENT_RECEIVED", "Payment received"),
    }

    def __init__(self, message_queue: MessageQueue, topic: str = "notifications", currency: str = "BRL"):
        self.message_queue = message_queue
        self.topic = topic
        self.currency = currency
        self._logger = logging.getLogger(self.__class__.__name__)

    def can_handle(self, event: DomainEvent) -> bool:
        return type(event) in self.NOTIFICATION_TYPES

    def handle(self, event: ReservationEvent) -> None:
        notification_type, title = self.NOTIFICATION_TYPES[type(event)]
        reservation = event.reservation
        amount = event.transaction.amount if isinstance(event, PaymentReceived) else reservation.total_cost
        notification = {
            "id": str(uuid.uuid4()),
            "type": notification_type,
            "title": title,
            "message": f"{title}: {reservation} ({amount} {self.currency})",
            "amount": str(amount),
            "currency": self.currency,
            "reservation_id": reservation.id,
            "company_id": reservation.company_id,
            "parking_lot_id": reservation.parking_lot_id,
            "timestamp": event.timestamp.isoformat(),
        }
        self.message_queue.publish(self.topic, notification)
        self._logger.info(f"Queued {notification_type} notification for reservation {reservation.id}")


# ============================================================================
# MESSAGE BUS
# ============================================================================

class MessageBus:
    """
    Orchestrates message flow between the event store, the event bus and
    the message queue

    ``publish`` never raises: each channel's failure is logged on its own.
    Queue publishing is retried with exponential backoff.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        event_store: Optional[Any] = None,
        topic: str = "reservation-events",
        max_retries: int = 3,
        retry_delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.event_store = event_store
        self.topic = topic
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, event: DomainEvent) -> None:
        """Publish a domain event through all channels"""
        self._logger.info(f"Publishing event {event.event_type} (ID: {event.event_id})")

        if self.event_store is not None:
            try:
                self.event_store.save(event)
            except Exception as e:
                self._logger.error(f"Failed to save event to store: {e}")

        self.event_bus.publish(event)

        if self.message_queue is not None:
            if not self._publish_with_retry(self.topic, event.to_dict()):
                self._logger.error(f"Failed to publish event {event.event_id} after {self.max_retries} attempts")

    def _publish_with_retry(self, topic: str, message: Envelope) -> bool:
        """Publish message with retry logic"""
        for attempt in range(self.max_retries):
            try:
                if self.message_queue.publish(topic, message):
                    return True
            except Exception as e:
                self._logger.warning(f"Attempt {attempt + 1} failed for message {message.get('event_id')}: {e}")
            if attempt < self.max_retries - 1:
                self._sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff
        return False

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to events on the event bus"""
        self.event_bus.subscribe(event_type, handler)

    def subscribe_to_queue(self, callback: Callable[[Envelope], None], topic: Optional[str] = None) -> str:
        if self.message_queue is None:
            raise RuntimeError("Message queue not configured")
        return self.message_queue.subscribe(topic or self.topic, callback)

    def history(self, reservation_id: str) -> List[Envelope]:
        """Stored events of one reservation"""
        if self.event_store is None:
            raise RuntimeError("Event store not configured")
        return self.event_store.get_events_for_aggregate(reservation_id)

    def close(self) -> None:
        if self.message_queue is not None:
            self.message_queue.close()
        if self.event_store is not None:
            self.event_store.close()


# ============================================================================
# MESSAGE BROKER FACTORY
# ============================================================================

class MessageBrokerFactory:
    """Factory for creating message buses"""

    @staticmethod
    def create_in_memory_bus(
        topic: str = "reservation-events",
        notifications: bool = True,
        notification_topic: str = "notifications",
        currency: str = "BRL"
    ) -> MessageBus:
        """Create a message bus with in-memory queue and store (for testing)"""
        queue = InMemoryMessageQueue()
        bus = MessageBus(
            event_bus=EventBus(),
            message_queue=queue,
            event_store=InMemoryEventStore(),
            topic=topic,
            sleep=lambda _: None,
        )
        if notifications:
            bus.subscribe(WILDCARD, NotificationEventHandler(queue, notification_topic, currency))
        return bus

    @staticmethod
    def create_message_bus(
        redis_url: Optional[str] = None,
        mongo_url: Optional[str] = None,
        topic: str = "reservation-events",
        max_retries: int = 3,
        retry_delay: float = 0.1,
        notification_topic: str = "notifications",
        currency: str = "BRL"
    ) -> MessageBus:
        """Create a message bus with Redis queue and optional MongoDB event store"""
        queue = RedisMessageQueue(redis_url) if redis_url else InMemoryMessageQueue()
        event_store = MongoEventStore(mongo_url) if mongo_url else None
        bus = MessageBus(
            event_bus=EventBus(),
            message_queue=queue,
            event_store=event_store,
            topic=topic,
            max_retries=max_retries,
            retry_delay=retry_delay,
        )
        bus.subscribe(WILDCARD, NotificationEventHandler(queue, notification_topic, currency))
        return bus
