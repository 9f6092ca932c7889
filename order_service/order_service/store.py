"""Persistence of orders and their items."""

from typing import Optional, Protocol

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StoreError
from .logger import logger
from .models import Base, Order, OrderItem
from .schemas import OrderItemRecord, OrderRecord, OrderStatus, OrderSummary, OrderTotals


class OrderStore(Protocol):
    """Interface of the order persistence collaborator.

    Every method raises ``StoreError`` when the underlying storage fails.
    """

    def create_order_with_items(self, totals: OrderTotals, items: list[OrderItemRecord]) -> OrderRecord:
        """Atomically persist an order and all of its items."""
        ...

    def find_by_id(self, order_id: str) -> Optional[OrderRecord]: ...

    def count_by_status(self, status: Optional[OrderStatus]) -> int: ...

    def list_by_status(self, status: Optional[OrderStatus], offset: int, limit: int) -> list[OrderSummary]: ...

    def update_status(self, order_id: str, status: OrderStatus) -> Optional[OrderRecord]: ...


def create_db_engine(database_url: str, timeout: float = 5.0) -> Engine:
    """Create an engine for the orders database.

    Args:
        database_url: SQLAlchemy database URL
        timeout: Seconds to wait for a connection, and for statements where
            the backend supports a statement timeout

    Returns:
        Engine: The configured engine
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": timeout}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    connect_args = {}
    if database_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_timeout=timeout,
        connect_args=connect_args,
    )


class SqlAlchemyOrderStore:
    """Order store backed by a relational database through SQLAlchemy."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def create_order_with_items(self, totals: OrderTotals, items: list[OrderItemRecord]) -> OrderRecord:
        """Persist an order and its items in a single transaction.

        Either the order row and every item row are committed, or nothing is.
        """
        try:
            with self._sessions.begin() as session:
                order = Order(
                    total_amount=totals.total_amount,
                    total_items=totals.total_items,
                    items=[
                        OrderItem(product_id=item.product_id, quantity=item.quantity, price=item.price)
                        for item in items
                    ],
                )
                session.add(order)
                session.flush()
                # Re-read column values so the record carries what the database stored.
                session.refresh(order)
                for item in order.items:
                    session.refresh(item)
                record = OrderRecord.model_validate(order)
        except SQLAlchemyError as e:
            raise StoreError(f"Could not create order: {e}") from e

        logger.debug(f"Stored order {record.id} with {len(record.items)} items")
        return record

    def find_by_id(self, order_id: str) -> Optional[OrderRecord]:
        try:
            with self._sessions() as session:
                order = session.get(Order, order_id, options=[selectinload(Order.items)])
                return OrderRecord.model_validate(order) if order else None
        except SQLAlchemyError as e:
            raise StoreError(f"Could not load order {order_id}: {e}") from e

    def count_by_status(self, status: Optional[OrderStatus]) -> int:
        query = select(func.count()).select_from(Order)
        if status is not None:
            query = query.where(Order.status == status)
        try:
            with self._sessions() as session:
                return session.scalar(query) or 0
        except SQLAlchemyError as e:
            raise StoreError(f"Could not count orders: {e}") from e

    def list_by_status(self, status: Optional[OrderStatus], offset: int, limit: int) -> list[OrderSummary]:
        query = select(Order).order_by(Order.created_at, Order.id).offset(offset).limit(limit)
        if status is not None:
            query = query.where(Order.status == status)
        try:
            with self._sessions() as session:
                return [OrderSummary.model_validate(order) for order in session.scalars(query)]
        except SQLAlchemyError as e:
            raise StoreError(f"Could not list orders: {e}") from e

    def update_status(self, order_id: str, status: OrderStatus) -> Optional[OrderRecord]:
        try:
            with self._sessions.begin() as session:
                order = session.get(Order, order_id, options=[selectinload(Order.items)])
                if order is None:
                    return None
                order.status = status
                session.flush()
                record = OrderRecord.model_validate(order)
        except SQLAlchemyError as e:
            raise StoreError(f"Could not update order {order_id}: {e}") from e

        logger.debug(f"Order {order_id} moved to {status.value}")
        return record

    def ping(self) -> bool:
        """Check if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            return False
