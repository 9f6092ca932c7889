"""Tests for the product catalog clients."""

import json
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from confluent_kafka import KafkaError

from order_service.catalog import (
    CatalogReply,
    InMemoryCatalogClient,
    KafkaCatalogClient,
    resolve_reply,
)
from order_service.errors import (
    CatalogTimeoutError,
    CatalogUnavailableError,
    MalformedCatalogReplyError,
    UnknownProductsError,
)
from order_service.schemas import Product

CORRELATION_ID = uuid.UUID("12345678123456781234567812345678")


def _message(payload):
    """Build a mock Kafka message carrying a JSON payload."""
    msg = MagicMock()
    msg.error.return_value = None
    msg.value.return_value = json.dumps(payload).encode("utf-8")
    return msg


def _reply(**body):
    return _message({"correlation_id": CORRELATION_ID.hex, **body})


def _feed(*messages):
    """Build a consumer ``poll`` that returns ``messages`` in order, then nothing."""
    queue = list(messages)

    def poll(timeout=None):
        if queue:
            return queue.pop(0)
        time.sleep(0.01)
        return None

    return poll


def _answering_catalog(producer, delay=0.0):
    """Build a consumer ``poll`` that answers every produced request once.

    Each reply echoes the requested ids back as products priced at 1.
    """
    answered = set()

    def poll(timeout=None):
        for call in list(producer.produce.call_args_list):
            request = json.loads(call.kwargs["value"].decode("utf-8"))
            if request["correlation_id"] not in answered:
                answered.add(request["correlation_id"])
                time.sleep(delay)
                products = [{"id": product_id, "price": 1, "name": product_id} for product_id in request["ids"]]
                return _message({"correlation_id": request["correlation_id"], "products": products})
        time.sleep(0.01)
        return None

    return poll


@pytest.fixture
def kafka_mocks():
    """Patch the Kafka producer and consumer used by the catalog client."""
    with patch("order_service.catalog.Producer") as mock_producer, patch(
        "order_service.catalog.Consumer"
    ) as mock_consumer:
        mock_producer.return_value.flush.return_value = 0
        yield mock_producer.return_value, mock_consumer.return_value


@pytest.fixture
def client(kafka_mocks):
    catalog_client = KafkaCatalogClient(
        bootstrap_servers="localhost:9092",
        request_topic="products.validate",
        reply_topic="orders.products.replies",
        timeout=0.2,
    )
    yield catalog_client
    catalog_client.close()


@pytest.fixture
def fixed_correlation_id():
    with patch("order_service.catalog.uuid.uuid4", return_value=CORRELATION_ID):
        yield


def test_client_initialization(kafka_mocks, client):
    """The reply consumer is subscribed to the reply topic."""
    _, consumer = kafka_mocks
    consumer.subscribe.assert_called_once_with(["orders.products.replies"])


def test_validate_products_success(kafka_mocks, client, fixed_correlation_id):
    producer, consumer = kafka_mocks
    consumer.poll.side_effect = _feed(
        None,
        _message({"correlation_id": "someone-else", "products": []}),
        _reply(
            products=[
                {"id": "A", "price": 10, "name": "Alpha"},
                {"id": "B", "price": 5.5, "name": "Beta"},
            ]
        ),
    )

    products = client.validate_products(["B", "A", "A"])

    assert [(p.id, p.price, p.name) for p in products] == [("A", Decimal("10"), "Alpha"), ("B", Decimal("5.5"), "Beta")]

    call_kwargs = producer.produce.call_args[1]
    assert call_kwargs["topic"] == "products.validate"
    assert call_kwargs["key"] == CORRELATION_ID.hex.encode("utf-8")
    request = json.loads(call_kwargs["value"].decode("utf-8"))
    assert request == {
        "correlation_id": CORRELATION_ID.hex,
        "reply_to": "orders.products.replies",
        "cmd": "validate_products",
        "ids": ["A", "B"],
    }


def test_validate_products_numeric_ids(kafka_mocks, client, fixed_correlation_id):
    """Numeric product ids in a reply still match the requested string ids."""
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed(_reply(products=[{"id": 1, "price": 3, "name": "One"}]))

    products = client.validate_products(["1"])

    assert products[0].id == "1"


def test_validate_products_partial_reply(kafka_mocks, client, fixed_correlation_id):
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed(_reply(products=[{"id": "A", "price": 10, "name": "Alpha"}]))

    with pytest.raises(UnknownProductsError) as exc_info:
        client.validate_products(["A", "B"])

    assert exc_info.value.product_ids == ["B"]


def test_validate_products_error_reply(kafka_mocks, client, fixed_correlation_id):
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed(
        _reply(error={"status": 400, "message": "Some products were not found", "missing_ids": ["B"]})
    )

    with pytest.raises(UnknownProductsError) as exc_info:
        client.validate_products(["A", "B"])

    assert exc_info.value.product_ids == ["B"]


def test_validate_products_catalog_internal_error(kafka_mocks, client, fixed_correlation_id):
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed(_reply(error={"status": 500, "message": "db down"}))

    with pytest.raises(CatalogUnavailableError):
        client.validate_products(["A"])


def test_validate_products_malformed_reply(kafka_mocks, client, fixed_correlation_id):
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed(_reply(products=[{"id": "A"}]))

    with pytest.raises(MalformedCatalogReplyError):
        client.validate_products(["A"])


def test_validate_products_skips_undecodable_messages(kafka_mocks, client, fixed_correlation_id):
    _, consumer = kafka_mocks
    garbage = MagicMock()
    garbage.error.return_value = None
    garbage.value.return_value = b"not json"
    consumer.poll.side_effect = _feed(garbage, _reply(products=[{"id": "A", "price": 1, "name": "Alpha"}]))

    assert len(client.validate_products(["A"])) == 1


def test_validate_products_timeout(kafka_mocks, client):
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed()

    with pytest.raises(CatalogTimeoutError):
        client.validate_products(["A"])


def test_validate_products_retries_after_timeout(kafka_mocks, client):
    producer, consumer = kafka_mocks
    client.retries = 1
    consumer.poll.side_effect = _feed()

    with pytest.raises(CatalogTimeoutError):
        client.validate_products(["A"])

    assert producer.produce.call_count == 2


def test_validate_products_request_not_delivered(kafka_mocks, client):
    producer, _ = kafka_mocks
    producer.flush.return_value = 1

    with pytest.raises(CatalogTimeoutError):
        client.validate_products(["A"])


def test_validate_products_buffer_full(kafka_mocks, client):
    producer, _ = kafka_mocks
    producer.produce.side_effect = BufferError("queue full")

    with pytest.raises(CatalogUnavailableError):
        client.validate_products(["A"])


def test_validate_products_kafka_error(kafka_mocks, client):
    _, consumer = kafka_mocks
    msg = MagicMock()
    msg.error.return_value.code.return_value = KafkaError._TRANSPORT
    consumer.poll.side_effect = _feed(msg)

    with pytest.raises(CatalogUnavailableError):
        client.validate_products(["A"])


def test_concurrent_callers_are_bounded_by_their_own_timeout(kafka_mocks, client):
    """An unanswered request does not make other callers wait longer than the timeout."""
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed()

    def timed_call(product_id):
        started = time.monotonic()
        with pytest.raises(CatalogTimeoutError):
            client.validate_products([product_id])
        return time.monotonic() - started

    with ThreadPoolExecutor(max_workers=3) as executor:
        elapsed = list(executor.map(timed_call, ["A", "B", "C"]))

    # Serialized callers would need three timeouts in total.
    assert max(elapsed) < client.timeout * 2


def test_concurrent_callers_receive_their_own_replies(kafka_mocks, client):
    producer, consumer = kafka_mocks
    client.timeout = 2.0
    consumer.poll.side_effect = _answering_catalog(producer, delay=0.02)

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(client.validate_products, [["A"], ["B"], ["C", "D"], ["E"]]))

    assert [[product.id for product in products] for products in results] == [["A"], ["B"], ["C", "D"], ["E"]]
    assert producer.produce.call_count == 4


def test_timed_out_request_is_unregistered(kafka_mocks, client):
    """A caller that gave up no longer receives replies for its correlation id."""
    _, consumer = kafka_mocks
    consumer.poll.side_effect = _feed()

    with pytest.raises(CatalogTimeoutError):
        client.validate_products(["A"])

    assert client._pending == {}


def test_close(kafka_mocks, client):
    producer, consumer = kafka_mocks
    client.close()
    producer.flush.assert_called()
    consumer.close.assert_called_once()


def test_resolve_reply_without_products_or_error():
    with pytest.raises(MalformedCatalogReplyError):
        resolve_reply(["A"], CatalogReply(correlation_id="x"))


def test_in_memory_catalog():
    catalog = InMemoryCatalogClient([Product(id="A", price=Decimal("1"), name="Alpha")])

    assert [p.id for p in catalog.validate_products(["A", "A"])] == ["A"]
    with pytest.raises(UnknownProductsError):
        catalog.validate_products(["A", "Z"])
