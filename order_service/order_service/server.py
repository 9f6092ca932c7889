"""FastAPI server implementation for the Orders Service."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .catalog import InMemoryCatalogClient, KafkaCatalogClient
from .config import Settings, get_settings
from .errors import OrderServiceError
from .logger import logger
from .schemas import ChangeOrderStatusRequest, CreateOrderRequest, EnrichedOrder, OrderPage, OrderStatus
from .store import SqlAlchemyOrderStore, create_db_engine
from .workflow import OrderWorkflow


def build_workflow(settings: Settings) -> OrderWorkflow:
    """Construct the catalog client, the store and the workflow from settings.

    Args:
        settings: Service settings

    Returns:
        OrderWorkflow: A workflow wired to its collaborators
    """
    store = SqlAlchemyOrderStore(create_db_engine(settings.database_url, settings.database_pool_timeout))
    store.create_schema()

    if settings.catalog_backend == "memory":
        logger.warning("🛈 Using the in-memory product catalog")
        catalog = InMemoryCatalogClient()
    else:
        catalog = KafkaCatalogClient(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            request_topic=settings.catalog_request_topic,
            reply_topic=settings.catalog_reply_topic,
            timeout=settings.catalog_timeout_seconds,
            retries=settings.catalog_retries,
            client_id=settings.service_name,
        )
    return OrderWorkflow(catalog=catalog, store=store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage the lifecycle of the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    workflow = build_workflow(get_settings())
    app.state.workflow = workflow
    logger.info("Orders workflow ready")

    yield

    logger.info("Shutting down orders service...")
    workflow.catalog.close()
    workflow.store.engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(title="Orders Service", lifespan=lifespan)
router = APIRouter()


def get_workflow(request: Request) -> OrderWorkflow:
    """Return the workflow built at startup."""
    workflow = getattr(request.app.state, "workflow", None)
    if workflow is None:
        raise HTTPException(status_code=503, detail="Service unavailable")
    return workflow


@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    """Render classified errors with their stable code and message only."""
    return JSONResponse(status_code=int(exc.status_code), content=exc.to_dict())


@router.get("/health")
def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy"}


@router.get("/health/ready")
def readiness_check(workflow: OrderWorkflow = Depends(get_workflow)):
    """Check if the store and the catalog are reachable.

    Returns:
        dict: Service readiness status and per-dependency status.
    """
    database_ok = workflow.store.ping()
    catalog_ok = workflow.catalog.is_healthy()
    return {
        "status": "ready" if database_ok and catalog_ok else "not_ready",
        "database": database_ok,
        "catalog": catalog_ok,
    }


@router.post("/orders", response_model=EnrichedOrder, status_code=201)
def create_order(request: CreateOrderRequest, workflow: OrderWorkflow = Depends(get_workflow)):
    """Create an order priced with the catalog's current prices.

    Args:
        request: The requested items

    Returns:
        EnrichedOrder: The persisted order with product names
    """
    logger.info(f"Received new order with {len(request.items)} items")
    return workflow.create_order(request.items)


@router.get("/orders", response_model=OrderPage)
def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    workflow: OrderWorkflow = Depends(get_workflow),
    settings: Settings = Depends(get_settings),
):
    """List orders page by page.

    Args:
        status: Only list orders in this status
        page: 1-based page number
        limit: Page size, defaults to DEFAULT_PAGE_SIZE

    Returns:
        OrderPage: The page of orders and its metadata
    """
    return workflow.list_orders(status, page, limit or settings.default_page_size)


@router.get("/orders/{order_id}", response_model=EnrichedOrder)
def get_order(order_id: str, workflow: OrderWorkflow = Depends(get_workflow)):
    """Get an order with its items named after the current catalog."""
    return workflow.get_order(order_id)


@router.patch("/orders/{order_id}/status", response_model=EnrichedOrder)
def change_order_status(
    order_id: str,
    request: ChangeOrderStatusRequest,
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """Move an order to a new status."""
    return workflow.change_status(order_id, request.status)


app.include_router(router)
logger.info("API router mounted.")
