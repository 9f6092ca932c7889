"""Test fixtures for the orders service tests."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from order_service.catalog import InMemoryCatalogClient
from order_service.schemas import OrderItemRequest, Product
from order_service.server import app, get_workflow
from order_service.store import SqlAlchemyOrderStore, create_db_engine
from order_service.workflow import OrderWorkflow


@pytest.fixture
def catalog():
    """Create an in-memory catalog with two products.

    Returns:
        InMemoryCatalogClient: Catalog holding products A (10.00) and B (5.00).
    """
    return InMemoryCatalogClient(
        [
            Product(id="A", price=Decimal("10"), name="Alpha"),
            Product(id="B", price=Decimal("5"), name="Beta"),
        ]
    )


@pytest.fixture
def store():
    """Create a store on a fresh in-memory SQLite database."""
    order_store = SqlAlchemyOrderStore(create_db_engine("sqlite://"))
    order_store.create_schema()
    yield order_store
    order_store.engine.dispose()


@pytest.fixture
def workflow(catalog, store):
    """Create a workflow wired to the in-memory catalog and SQLite store."""
    return OrderWorkflow(catalog=catalog, store=store)


@pytest.fixture
def sample_items():
    """Two A and one B, worth 25.00 in total."""
    return [OrderItemRequest(product_id="A", quantity=2), OrderItemRequest(product_id="B", quantity=1)]


@pytest.fixture
def test_client(workflow):
    """Create a test client whose routes use the test workflow."""
    app.dependency_overrides[get_workflow] = lambda: workflow
    yield TestClient(app)
    app.dependency_overrides.clear()
