"""Broadcast of surgical case mutations to dayboard subscribers.

Event types: ``case_transition``, ``checklist_updated``, ``timeline_updated``.
Every event carries ``type``, ``case_id`` and ``emitted_at``.
"""

import asyncio
import json
import logging
import uuid
from typing import Any

from app.config import (
    GCP_PROJECT_ID,
    GCP_PUBSUB_SUBSCRIPTION_PREFIX,
    GCP_PUBSUB_TOPIC,
)
from app.timestamps import to_iso, utcnow

logger = logging.getLogger(__name__)

try:  # Optional dependency for GCP Pub/Sub
    from google.cloud import pubsub_v1  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    pubsub_v1 = None

QUEUE_MAXSIZE = 256


class CaseEventBus:
    """In-memory pub/sub for a single worker."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._global_subscribers: set[asyncio.Queue] = set()

    def subscribe_all(self) -> asyncio.Queue:
        """Subscribe to every case's events (the dayboard feed)."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        self._global_subscribers.add(queue)
        return queue

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        self._global_subscribers.discard(queue)

    def subscribe(self, case_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        self._subscribers.setdefault(case_id, set()).add(queue)
        return queue

    def unsubscribe(self, case_id: str, queue: asyncio.Queue) -> None:
        if case_id in self._subscribers:
            self._subscribers[case_id].discard(queue)
            if not self._subscribers[case_id]:
                del self._subscribers[case_id]

    async def publish(self, case_id: str, event_type: str, payload: dict | None = None) -> dict:
        event = {
            "type": event_type,
            "case_id": case_id,
            "emitted_at": to_iso(utcnow()),
            **(payload or {}),
        }
        self._fan_out(case_id, event)
        return event

    def _fan_out(self, case_id: str, event: dict) -> None:
        for queue in self._subscribers.get(case_id, set()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full for case %s subscriber; dropping %s", case_id, event["type"])

        for queue in self._global_subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dayboard event queue full; dropping %s", event["type"])


class PubSubEventBus(CaseEventBus):
    """Pub/Sub-backed event bus so every worker's dayboard sees every mutation."""

    def __init__(self, project_id: str, topic: str) -> None:
        super().__init__()
        self._project_id = project_id
        self._publisher = pubsub_v1.PublisherClient()  # type: ignore[call-arg]
        self._subscriber = pubsub_v1.SubscriberClient()  # type: ignore[call-arg]
        if topic.startswith("projects/"):
            self._topic_path = topic
        else:
            self._topic_path = self._publisher.topic_path(project_id, topic)
        self._subscriptions: dict[asyncio.Queue, tuple[str, Any]] = {}

    def _create_subscription(self, case_id: str | None) -> str:
        subscription_id = f"{GCP_PUBSUB_SUBSCRIPTION_PREFIX}-{uuid.uuid4().hex}"
        sub_path = self._subscriber.subscription_path(self._project_id, subscription_id)
        request: dict[str, Any] = {"name": sub_path, "topic": self._topic_path}
        if case_id:
            request["filter"] = f'attributes.case_id="{case_id}"'
        self._subscriber.create_subscription(request=request)
        return sub_path

    def _start_listener(self, queue: asyncio.Queue, sub_path: str) -> Any:
        loop = asyncio.get_running_loop()

        def _callback(message) -> None:
            try:
                event = json.loads(message.data.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("Discarding malformed Pub/Sub event on %s", sub_path)
                message.ack()
                return
            loop.call_soon_threadsafe(queue.put_nowait, event)
            message.ack()

        return self._subscriber.subscribe(sub_path, callback=_callback)

    def _subscribe(self, case_id: str | None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_MAXSIZE)
        sub_path = self._create_subscription(case_id)
        future = self._start_listener(queue, sub_path)
        self._subscriptions[queue] = (sub_path, future)
        return queue

    def subscribe_all(self) -> asyncio.Queue:
        return self._subscribe(None)

    def subscribe(self, case_id: str) -> asyncio.Queue:
        return self._subscribe(case_id)

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        self._unsubscribe(queue)

    def unsubscribe(self, case_id: str, queue: asyncio.Queue) -> None:
        self._unsubscribe(queue)

    def _unsubscribe(self, queue: asyncio.Queue) -> None:
        sub = self._subscriptions.pop(queue, None)
        if not sub:
            return
        sub_path, future = sub
        future.cancel()
        try:
            self._subscriber.delete_subscription(subscription=sub_path)
        except Exception as exc:
            logger.warning("Failed to delete subscription %s: %s", sub_path, exc)

    async def publish(self, case_id: str, event_type: str, payload: dict | None = None) -> dict:
        event = {
            "type": event_type,
            "case_id": case_id,
            "emitted_at": to_iso(utcnow()),
            **(payload or {}),
        }
        try:
            self._publisher.publish(
                self._topic_path,
                json.dumps(event).encode("utf-8"),
                case_id=case_id,
                event_type=event_type,
            )
        except Exception as exc:
            logger.error("Failed to publish Pub/Sub event %s for case %s: %s", event_type, case_id, exc)
        return event


if GCP_PROJECT_ID and GCP_PUBSUB_TOPIC and pubsub_v1 is not None:
    logger.info("Using GCP Pub/Sub event bus for surgical case events")
    event_bus: CaseEventBus = PubSubEventBus(GCP_PROJECT_ID, GCP_PUBSUB_TOPIC)
else:
    if GCP_PROJECT_ID or GCP_PUBSUB_TOPIC:
        logger.warning("Pub/Sub config set but google-cloud-pubsub not installed; falling back to in-memory bus")
    event_bus = CaseEventBus()
