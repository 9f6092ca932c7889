"""Error types of the orders service.

Collaborator errors (``CatalogError``, ``StoreError``) stay inside the
service. The workflow re-classifies them into ``OrderServiceError``
subclasses, which are the only errors a caller ever sees.
"""

from http import HTTPStatus
from typing import Iterable, Optional


class CatalogError(Exception):
    """Base class for failures of the product catalog collaborator."""


class CatalogUnavailableError(CatalogError):
    """The catalog could not be reached or did not answer in time."""


class CatalogTimeoutError(CatalogUnavailableError):
    """No catalog reply arrived within the configured timeout."""


class MalformedCatalogReplyError(CatalogError):
    """The catalog answered with a payload that cannot be decoded."""


class UnknownProductsError(CatalogError):
    """The catalog could not resolve some of the requested product ids."""

    def __init__(self, product_ids: Iterable[str], message: Optional[str] = None):
        self.product_ids = sorted(set(product_ids))
        super().__init__(message or f"Unknown product ids: {', '.join(self.product_ids)}")


class StoreError(Exception):
    """The order store failed to complete an operation."""


class OrderServiceError(Exception):
    """Base class for classified, caller-facing errors.

    Attributes:
        code: Stable machine-readable error code
        status_code: HTTP status used when rendered by the API
        message: Caller-safe message, never containing internal details
    """

    code = "ORDER_SERVICE_ERROR"
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"status": int(self.status_code), "error": self.code, "message": self.message}


class ValidationFailure(OrderServiceError):
    code = "VALIDATION_FAILED"
    status_code = HTTPStatus.BAD_REQUEST


class NotFound(OrderServiceError):
    code = "NOT_FOUND"
    status_code = HTTPStatus.NOT_FOUND

    def __init__(self, order_id: str):
        super().__init__(f"Order with id {order_id} not found")
        self.order_id = order_id


class DependencyFailure(OrderServiceError):
    code = "DEPENDENCY_FAILED"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE
