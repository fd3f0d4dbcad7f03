"""
Erreurs métier exposées à la frontière HTTP.

Le code HTTP fait partie du contrat :
    400 bad-input, 404 not-found, 409 stock-conflict,
    502 upstream-unavailable, 500 internal.
"""

from __future__ import annotations

from typing import Any


class SaleflowError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(SaleflowError):
    status_code = 400


class NotFoundError(SaleflowError):
    status_code = 404


class ConflictError(SaleflowError):
    status_code = 409


class UpstreamUnavailable(SaleflowError):
    status_code = 502


class InternalError(SaleflowError):
    status_code = 500


class MissingCostError(InternalError):
    def __init__(self, product_id: int):
        super().__init__(f"No purchase record found for product {product_id}")
        self.product_id = product_id
