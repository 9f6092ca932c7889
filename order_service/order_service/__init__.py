"""Orders service: order creation, retrieval and status management."""

__version__ = "0.1.0"
