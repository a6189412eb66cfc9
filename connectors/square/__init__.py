"""Square Connector Package.

Implements the InvoiceSource interface for the Square Invoices/Orders APIs.
"""

from connectors.square.square_client import (
    RetryConfig,
    SquareApiClient,
    SquareApiConfig,
    SquareApiError,
    SquareAuthenticationError,
    SquareNotFoundError,
    SquarePermissionError,
    SquareRateLimitError,
    SquareValidationError,
)
from connectors.square.square_connector import SquareInvoiceSource
from connectors.square.square_models import (
    SquareInvoice,
    SquareLineItem,
    SquareLocation,
    SquareOrder,
)

__all__ = [
    # Source
    "SquareInvoiceSource",
    # Client
    "SquareApiClient",
    "SquareApiConfig",
    "RetryConfig",
    # Errors
    "SquareApiError",
    "SquareAuthenticationError",
    "SquareNotFoundError",
    "SquarePermissionError",
    "SquareRateLimitError",
    "SquareValidationError",
    # Models
    "SquareInvoice",
    "SquareLineItem",
    "SquareLocation",
    "SquareOrder",
]
