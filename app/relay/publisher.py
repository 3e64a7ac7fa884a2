"""Broker publishers used by the outbox relay."""

import base64
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from app.core.config import (
    BROKER_BACKEND,
    DEFAULT_TOPIC,
    KAFKA_CLUSTER_ID,
    KAFKA_REST_URL,
    PUBLISH_TIMEOUT,
    TOPIC_ROUTES,
)
from app.relay.exceptions import PermanentPublishError, PublishError

log = logging.getLogger("broker_publisher")

RETRYABLE_STATUS_CODES = (408, 429)


def resolve_topic(event_type: str) -> str:
    """Routes an event type to its broker topic."""
    return TOPIC_ROUTES.get(event_type, DEFAULT_TOPIC)


class BrokerPublisher(ABC):
    """
    Transport the relay hands each outbox message to.

    `publish` returns on success and raises on failure; the exception text is
    recorded as the message's last_error. Every call is a fresh delivery
    attempt, duplicates are left to idempotent consumers. Implementations must
    be safe to call concurrently for different partition keys.
    """

    @abstractmethod
    async def publish(
        self,
        topic: str,
        partition_key: Optional[str],
        payload: str,
        metadata: Optional[str] = None,
    ) -> None:
        ...

    async def close(self) -> None:
        pass


@dataclass
class PublishedMessage:
    topic: str
    partition_key: Optional[str]
    payload: str
    metadata: Optional[str] = None


Handler = Callable[[PublishedMessage], Awaitable[None]]


class InProcessBroker(BrokerPublisher):
    """
    Simulates a message broker inside the process.

    Keeps every accepted message in `published` (and per partition key, in
    publish order) and routes it to the handlers subscribed to its topic.
    A handler exception is reported as a publish failure.
    """

    def __init__(self):
        self.published: List[PublishedMessage] = []
        self.by_partition: Dict[str, List[PublishedMessage]] = defaultdict(list)
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    async def publish(self, topic, partition_key, payload, metadata=None) -> None:
        message = PublishedMessage(topic, partition_key, payload, metadata)
        for handler in self._handlers.get(topic, []):
            try:
                await handler(message)
            except Exception as e:
                raise PublishError(f"Handler {getattr(handler, '__name__', handler)} failed: {e}") from e

        self.published.append(message)
        if partition_key is not None:
            self.by_partition[partition_key].append(message)
        log.info(f"Broker DELIVERED to '{topic}' (key={partition_key})")


class KafkaRestPublisher(BrokerPublisher):
    """
    Publishes to Kafka through a Confluent REST Proxy (v3 records API).

    The partition key becomes the Kafka record key, so the broker keeps
    records sharing it in one partition, in publish order.
    """

    def __init__(
        self,
        base_url: str,
        cluster_id: str,
        timeout_seconds: float = PUBLISH_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not cluster_id:
            raise ValueError("KAFKA_CLUSTER_ID is required for the kafka-rest broker backend.")
        self.base_url = base_url.rstrip("/")
        self.cluster_id = cluster_id
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

        log.info(f"Kafka REST publisher initialized for {self.base_url} (cluster {cluster_id})")

    def _records_url(self, topic: str) -> str:
        return f"{self.base_url}/v3/clusters/{self.cluster_id}/topics/{topic}/records"

    @staticmethod
    def build_record(partition_key: Optional[str], payload: str, metadata: Optional[str]) -> dict:
        try:
            value = json.loads(payload)
        except ValueError as e:
            raise PermanentPublishError(f"Payload is not valid JSON: {e}") from e

        record = {"value": {"type": "JSON", "data": value}}
        if partition_key is not None:
            record["key"] = {"type": "STRING", "data": partition_key}
        if metadata is not None:
            record["headers"] = [
                {"name": "metadata", "value": base64.b64encode(metadata.encode()).decode()}
            ]
        return record

    async def publish(self, topic, partition_key, payload, metadata=None) -> None:
        record = self.build_record(partition_key, payload, metadata)

        try:
            response = await self.http_client.post(self._records_url(topic), json=record)
        except httpx.TimeoutException as e:
            raise PublishError(f"Kafka REST proxy timeout: {e}") from e
        except httpx.RequestError as e:
            # Network errors, connection errors, etc.
            raise PublishError(f"Kafka REST proxy request error: {e}") from e

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            raise PublishError(f"Kafka REST proxy unavailable (status: {response.status_code})")
        if response.status_code >= 400:
            raise PermanentPublishError(
                f"Kafka REST proxy rejected record (status: {response.status_code}): {response.text[:500]}"
            )

        # The proxy reports per-record failures inside a 200 response
        body = response.json()
        error_code = body.get("error_code", 200)
        if error_code != 200:
            raise PublishError(f"Kafka rejected record (error_code: {error_code}): {body.get('message')}")

        log.debug(
            f"Kafka REST published to '{topic}' partition={body.get('partition_id')} offset={body.get('offset')}"
        )

    async def close(self) -> None:
        """Close the HTTP client connection pool."""
        await self.http_client.aclose()


def build_publisher(backend: str = BROKER_BACKEND) -> BrokerPublisher:
    """Creates the configured broker transport."""
    if backend == "inprocess":
        return InProcessBroker()
    if backend == "kafka-rest":
        return KafkaRestPublisher(KAFKA_REST_URL, KAFKA_CLUSTER_ID)
    raise ValueError(f"Unknown broker backend: {backend}")
