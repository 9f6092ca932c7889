"""Product catalog clients.

The catalog lives in another service and is only reachable through
request/reply messaging over Kafka. ``KafkaCatalogClient`` sends a
``validate_products`` request keyed by a correlation id and blocks until the
matching reply arrives on this service's reply topic, or the timeout elapses.
"""

import json
import threading
import time
import uuid
from typing import Iterable, Optional, Protocol

from confluent_kafka import Consumer, KafkaError, KafkaException, Producer
from confluent_kafka.admin import AdminClient
from logging_utils.config import get_kafka_logger
from pydantic import BaseModel, Field, ValidationError

from .errors import (
    CatalogError,
    CatalogTimeoutError,
    CatalogUnavailableError,
    MalformedCatalogReplyError,
    UnknownProductsError,
)
from .schemas import Product

logger = get_kafka_logger("orders-service")


class ProductCatalogClient(Protocol):
    """Interface of the product catalog collaborator."""

    def validate_products(self, product_ids: Iterable[str]) -> list[Product]:
        """Resolve every id to a product, or fail.

        Raises:
            UnknownProductsError: If any id cannot be resolved.
            CatalogUnavailableError: If the catalog cannot be reached in time.
            MalformedCatalogReplyError: If the reply cannot be decoded.
        """
        ...


class CatalogReplyError(BaseModel):
    """Error body of a catalog reply."""

    status: int = 400
    message: str = ""
    missing_ids: list[str] = Field(default_factory=list)


class CatalogReply(BaseModel):
    """A reply message consumed from the reply topic."""

    correlation_id: str
    products: Optional[list[Product]] = None
    error: Optional[CatalogReplyError] = None


def resolve_reply(product_ids: list[str], reply: CatalogReply) -> list[Product]:
    """Turn a decoded reply into products, enforcing all-or-nothing resolution.

    Args:
        product_ids: The ids that were requested
        reply: The decoded reply

    Returns:
        list[Product]: The resolved products

    Raises:
        UnknownProductsError: If the catalog rejected ids or left some unresolved.
        CatalogUnavailableError: If the catalog reported an internal failure.
        MalformedCatalogReplyError: If the reply carries neither products nor error.
    """
    if reply.error is not None:
        if reply.error.status >= 500:
            raise CatalogUnavailableError(f"Catalog failed: {reply.error.message}")
        raise UnknownProductsError(reply.error.missing_ids or product_ids, reply.error.message or None)

    if reply.products is None:
        raise MalformedCatalogReplyError(f"Reply {reply.correlation_id} has neither products nor error")

    found = {product.id for product in reply.products}
    missing = set(product_ids) - found
    if missing:
        raise UnknownProductsError(missing)
    return reply.products


class _PendingReply:
    """Slot a waiting caller blocks on until the reply poller fills it."""

    def __init__(self):
        self.event = threading.Event()
        self.reply: Optional[CatalogReply] = None
        self.error: Optional[CatalogError] = None

    def deliver(self, reply: CatalogReply) -> None:
        self.reply = reply
        self.event.set()

    def fail(self, error: CatalogError) -> None:
        self.error = error
        self.event.set()


class KafkaCatalogClient:
    """Request/reply client for the catalog service over Kafka.

    Requests from concurrent callers are independent. A single background
    thread polls the reply topic and hands each reply to the caller waiting on
    its correlation id, so every caller is bounded by its own timeout.

    Attributes:
        producer: Kafka producer used for requests.
        consumer: Kafka consumer subscribed to the reply topic.
    """

    def __init__(
        self,
        bootstrap_servers: str,
        request_topic: str,
        reply_topic: str,
        timeout: float = 5.0,
        retries: int = 0,
        client_id: str = "orders-service",
    ):
        """Initialize the producer and the reply consumer.

        Args:
            bootstrap_servers: Kafka bootstrap servers
            request_topic: Topic the catalog service listens on
            reply_topic: Topic the catalog answers on for this service
            timeout: Seconds to wait for a reply, per attempt
            retries: Extra attempts made after a timeout
            client_id: Kafka client id
        """
        self.bootstrap_servers = bootstrap_servers
        self.request_topic = request_topic
        self.reply_topic = reply_topic
        self.timeout = timeout
        self.retries = retries
        self._pending: dict[str, _PendingReply] = {}
        self._pending_lock = threading.Lock()
        self._poller: Optional[threading.Thread] = None
        self._stopping = threading.Event()

        logger.info(
            f"Initializing catalog client | bootstrap_servers={bootstrap_servers} | "
            f"request_topic={request_topic} | reply_topic={reply_topic}"
        )
        self.producer = Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "client.id": client_id,
                "acks": "all",
                "message.timeout.ms": int(timeout * 1000),
            }
        )
        self.consumer = Consumer(
            {
                "bootstrap.servers": bootstrap_servers,
                "group.id": f"{client_id}-replies-{uuid.uuid4().hex[:8]}",
                "auto.offset.reset": "earliest",
                "enable.auto.commit": False,
            }
        )
        self.consumer.subscribe([reply_topic])

    def validate_products(self, product_ids: Iterable[str]) -> list[Product]:
        """Resolve product ids through the catalog service.

        Args:
            product_ids: Ids to resolve; duplicates are collapsed

        Returns:
            list[Product]: One product per distinct id
        """
        ids = sorted(set(product_ids))
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            correlation_id = uuid.uuid4().hex
            try:
                return self._request(correlation_id, ids)
            except CatalogTimeoutError:
                logger.warning(
                    f"Catalog request timed out | correlation_id={correlation_id} | attempt={attempt}/{attempts}"
                )
                if attempt == attempts:
                    raise
        raise CatalogTimeoutError("Catalog did not answer")

    def _request(self, correlation_id: str, ids: list[str]) -> list[Product]:
        deadline = time.monotonic() + self.timeout
        slot = _PendingReply()
        with self._pending_lock:
            self._pending[correlation_id] = slot
        try:
            self._send(correlation_id, ids, deadline)
            self._start_poller()

            logger.debug(f"Waiting for catalog reply | correlation_id={correlation_id} | ids={ids}")
            if not slot.event.wait(max(deadline - time.monotonic(), 0)):
                raise CatalogTimeoutError(f"No catalog reply for {correlation_id} within {self.timeout}s")
        finally:
            with self._pending_lock:
                self._pending.pop(correlation_id, None)

        if slot.error is not None:
            raise slot.error
        return resolve_reply(ids, slot.reply)

    def _send(self, correlation_id: str, ids: list[str], deadline: float) -> None:
        payload = {
            "correlation_id": correlation_id,
            "reply_to": self.reply_topic,
            "cmd": "validate_products",
            "ids": ids,
        }
        delivery_errors = []

        def on_delivery(err, msg):
            if err:
                delivery_errors.append(err)
                logger.error(f"Catalog request delivery failed: {err}")
            else:
                logger.debug(f"Catalog request delivered to {msg.topic()} [{msg.partition()}]")

        try:
            self.producer.produce(
                topic=self.request_topic,
                key=correlation_id.encode("utf-8"),
                value=json.dumps(payload).encode("utf-8"),
                headers=[
                    ("correlation_id", correlation_id.encode("utf-8")),
                    ("reply_to", self.reply_topic.encode("utf-8")),
                ],
                on_delivery=on_delivery,
            )
            remaining = self.producer.flush(max(deadline - time.monotonic(), 0))
        except (BufferError, KafkaException) as e:
            raise CatalogUnavailableError(f"Could not send catalog request: {e}") from e

        if remaining > 0:
            raise CatalogTimeoutError(f"Catalog request {correlation_id} was not delivered in time")
        if delivery_errors:
            raise CatalogUnavailableError(f"Catalog request {correlation_id} failed: {delivery_errors[0]}")

    def _start_poller(self) -> None:
        with self._pending_lock:
            if self._poller is None:
                self._poller = threading.Thread(target=self._poll_replies, name="catalog-replies", daemon=True)
                self._poller.start()

    def _poll_replies(self) -> None:
        """Consume the reply topic until closed, dispatching replies to waiting callers."""
        logger.info(f"Reply poller started | reply_topic={self.reply_topic}")
        while not self._stopping.is_set():
            msg = self.consumer.poll(timeout=0.5)
            if msg is None:
                continue
            if msg.error():
                if msg.error().code() == KafkaError._PARTITION_EOF:
                    continue
                logger.error(f"Consumer error: {msg.error()}")
                self._fail_pending(f"Kafka error while waiting for reply: {msg.error()}")
                continue
            try:
                self._dispatch(msg.value())
            except Exception as e:
                logger.error(f"Error dispatching catalog reply: {e}")
        logger.info("Reply poller stopped")

    def _dispatch(self, value: bytes) -> None:
        """Hand a reply to the caller waiting on its correlation id, if any."""
        try:
            raw = json.loads(value)
        except (TypeError, ValueError):
            logger.warning(f"Skipping undecodable message on {self.reply_topic}")
            return

        correlation_id = raw.get("correlation_id") if isinstance(raw, dict) else None
        with self._pending_lock:
            slot = self._pending.get(correlation_id) if isinstance(correlation_id, str) else None
        if slot is None:
            logger.debug(f"Skipping reply for another request: {correlation_id}")
            return

        try:
            slot.deliver(CatalogReply.model_validate(raw))
        except ValidationError as e:
            slot.fail(MalformedCatalogReplyError(f"Malformed catalog reply {correlation_id}: {e}"))

    def _fail_pending(self, message: str) -> None:
        with self._pending_lock:
            slots = list(self._pending.values())
        for slot in slots:
            slot.fail(CatalogUnavailableError(message))

    def is_healthy(self) -> bool:
        """Check if the Kafka cluster is reachable.

        Returns:
            bool: True if topics can be listed, False otherwise.
        """
        try:
            admin = AdminClient({"bootstrap.servers": self.bootstrap_servers})
            return bool(admin.list_topics(timeout=5))
        except Exception as e:
            logger.error(f"Kafka connection failed: {e}")
            return False

    def close(self) -> None:
        """Stop the reply poller, flush pending requests and close the reply consumer."""
        self._stopping.set()
        if self._poller is not None:
            self._poller.join(timeout=self.timeout + 1.0)
        remaining = self.producer.flush(self.timeout)
        if remaining > 0:
            logger.warning(f"{remaining} catalog requests still pending delivery")
        self.consumer.close()
        logger.info("Catalog client closed")


class InMemoryCatalogClient:
    """Dictionary-backed catalog used for local development."""

    def __init__(self, products: Iterable[Product] = ()):
        self._products: dict[str, Product] = {product.id: product for product in products}

    def upsert(self, product: Product) -> None:
        self._products[product.id] = product

    def validate_products(self, product_ids: Iterable[str]) -> list[Product]:
        ids = sorted(set(product_ids))
        missing = [product_id for product_id in ids if product_id not in self._products]
        if missing:
            raise UnknownProductsError(missing)
        return [self._products[product_id] for product_id in ids]

    def is_healthy(self) -> bool:
        return True

    def close(self) -> None:
        pass
