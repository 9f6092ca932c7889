"""Order workflow: creation, retrieval, listing and status transition.

The workflow talks to two collaborators, the product catalog and the order
store, and never lets their errors escape unclassified: every collaborator
failure is logged here and re-raised as an ``OrderServiceError``.
"""

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from .catalog import ProductCatalogClient
from .errors import (
    CatalogError,
    DependencyFailure,
    NotFound,
    StoreError,
    UnknownProductsError,
    ValidationFailure,
)
from .logger import logger
from .schemas import (
    EnrichedOrder,
    EnrichedOrderItem,
    OrderItemRecord,
    OrderItemRequest,
    OrderPage,
    OrderRecord,
    OrderStatus,
    OrderTotals,
    PageMeta,
    Product,
)
from .store import OrderStore

ORDER_NOT_CREATED = "Order could not be created"
ORDER_UNAVAILABLE = "Order service dependency unavailable, try again later"
# Scale of the price and amount columns.
PRICE_QUANTUM = Decimal("0.01")


def price_items(items: list[OrderItemRequest], products: dict[str, Product]) -> list[OrderItemRecord]:
    """Attach the catalog unit price to each requested item, keeping input order.

    Prices are rounded half-up to cents before totals are computed, so the
    stored total always equals the sum of the stored line amounts.

    Raises:
        UnknownProductsError: If an item references a product absent from ``products``.
    """
    missing = [item.product_id for item in items if item.product_id not in products]
    if missing:
        raise UnknownProductsError(missing, "Catalog reply is missing requested products")
    return [
        OrderItemRecord(
            product_id=item.product_id,
            quantity=item.quantity,
            price=products[item.product_id].price.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP),
        )
        for item in items
    ]


def compute_totals(items: Iterable[OrderItemRecord]) -> OrderTotals:
    total_amount = Decimal(0)
    total_items = 0
    for item in items:
        total_amount += item.price * item.quantity
        total_items += item.quantity
    return OrderTotals(total_amount=total_amount, total_items=total_items)


def enrich_order(order: OrderRecord, products: dict[str, Product]) -> EnrichedOrder:
    """Join a stored order with catalog products, adding each item's name.

    Args:
        order: The persisted order with its items
        products: Catalog products keyed by id

    Returns:
        EnrichedOrder: The order view with named items

    Raises:
        UnknownProductsError: If an item's product is not in ``products``.
    """
    missing = [item.product_id for item in order.items if item.product_id not in products]
    if missing:
        raise UnknownProductsError(missing, "Catalog reply is missing products of the order")

    return EnrichedOrder(
        **order.model_dump(exclude={"items"}),
        items=[
            EnrichedOrderItem(**item.model_dump(), name=products[item.product_id].name)
            for item in order.items
        ],
    )


class OrderWorkflow:
    """Coordinates the catalog and the store for every order operation.

    Attributes:
        catalog: Product catalog client.
        store: Order store.
    """

    def __init__(self, catalog: ProductCatalogClient, store: OrderStore):
        self.catalog = catalog
        self.store = store

    def _fetch_products(self, product_ids: Iterable[str]) -> dict[str, Product]:
        products = self.catalog.validate_products(set(product_ids))
        return {product.id: product for product in products}

    def create_order(self, items: list[OrderItemRequest]) -> EnrichedOrder:
        """Validate products, price the items and persist the order atomically.

        Args:
            items: Requested lines, in caller order

        Returns:
            EnrichedOrder: The persisted order with catalog names on its items

        Raises:
            ValidationFailure: If a product cannot be resolved by the catalog.
            DependencyFailure: If the catalog or the store fails.
        """
        try:
            products = self._fetch_products(item.product_id for item in items)
            priced = price_items(items, products)
            totals = compute_totals(priced)
            order = self.store.create_order_with_items(totals, priced)
            enriched = enrich_order(order, products)
        except UnknownProductsError as e:
            logger.warning(f"Order rejected, unknown products {e.product_ids}: {e}")
            raise ValidationFailure(ORDER_NOT_CREATED) from e
        except CatalogError as e:
            logger.error(f"Order not created, catalog failure: {e!r}")
            raise DependencyFailure(ORDER_NOT_CREATED) from e
        except StoreError as e:
            logger.error(f"Order not created, store failure: {e!r}")
            raise DependencyFailure(ORDER_NOT_CREATED) from e

        logger.info(
            f"Order created | order_id={enriched.id} | total_amount={enriched.total_amount} | "
            f"total_items={enriched.total_items}"
        )
        return enriched

    def _load(self, order_id: str) -> tuple[OrderRecord, dict[str, Product]]:
        try:
            order = self.store.find_by_id(order_id)
        except StoreError as e:
            logger.error(f"Could not load order {order_id}: {e!r}")
            raise DependencyFailure(ORDER_UNAVAILABLE) from e

        if order is None:
            logger.info(f"Order {order_id} not found")
            raise NotFound(order_id)

        try:
            products = self._fetch_products(item.product_id for item in order.items)
        except CatalogError as e:
            logger.error(f"Catalog lookup failed for order {order_id}: {e!r}")
            raise DependencyFailure(ORDER_UNAVAILABLE) from e
        return order, products

    def _enrich(self, order: OrderRecord, products: dict[str, Product]) -> EnrichedOrder:
        try:
            return enrich_order(order, products)
        except UnknownProductsError as e:
            logger.error(f"Catalog reply incomplete for order {order.id}: {e}")
            raise DependencyFailure(ORDER_UNAVAILABLE) from e

    def get_order(self, order_id: str) -> EnrichedOrder:
        """Return an order with its items named after the current catalog.

        Raises:
            NotFound: If no order has this id.
            DependencyFailure: If the catalog or the store fails.
        """
        order, products = self._load(order_id)
        return self._enrich(order, products)

    def list_orders(self, status: Optional[OrderStatus] = None, page: int = 1, page_size: int = 10) -> OrderPage:
        """Return one page of orders, without catalog enrichment.

        Raises:
            ValidationFailure: If ``page`` or ``page_size`` is below 1.
            DependencyFailure: If the store fails.
        """
        if page < 1 or page_size < 1:
            raise ValidationFailure("page and page size must be at least 1")

        try:
            total = self.store.count_by_status(status)
            data = self.store.list_by_status(status, offset=(page - 1) * page_size, limit=page_size)
        except StoreError as e:
            logger.error(f"Could not list orders: {e!r}")
            raise DependencyFailure(ORDER_UNAVAILABLE) from e

        return OrderPage(
            data=data,
            meta=PageMeta(total=total, page=page, last_page=math.ceil(total / page_size)),
        )

    def change_status(self, order_id: str, status: OrderStatus) -> EnrichedOrder:
        """Move an order to ``status``; a request for the current status is a no-op.

        The updated order is named with the catalog reply fetched while loading
        it, so the response has the same shape as ``get_order``.

        Raises:
            NotFound: If no order has this id.
            DependencyFailure: If the catalog or the store fails.
        """
        order, products = self._load(order_id)
        if order.status == status:
            logger.info(f"Order {order_id} already {status.value}, nothing to do")
            return self._enrich(order, products)

        try:
            updated = self.store.update_status(order_id, status)
        except StoreError as e:
            logger.error(f"Could not update order {order_id}: {e!r}")
            raise DependencyFailure(ORDER_UNAVAILABLE) from e

        if updated is None:
            raise NotFound(order_id)

        logger.info(f"Order {order_id} status changed | from={order.status.value} | to={status.value}")
        return self._enrich(updated, products)
