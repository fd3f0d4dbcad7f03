"""
Dépendances externes de la saga (ledger, resolver, facturation).

Chaque dépendance est une interface injectée : implémentation HTTP
(requests, endpoint + timeout configurés, aucun retry) ou implémentation
locale qui appelle directement les services avec sa propre Session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Protocol, Sequence

import requests
from sqlalchemy.orm import Session

from saleflow.app.core.config import Settings
from saleflow.app.core.errors import (
    ConflictError,
    NotFoundError,
    UpstreamUnavailable,
)
from saleflow.app.db.models.core_types import InvoiceStatus
from saleflow.services import pricing, stock_ledger
from saleflow.services.stock_ledger import StockLine

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


# ---------- Interfaces ----------
class StockLedger(Protocol):
    def reserve(self, items: Sequence[StockLine], *, reference: str | None = None) -> None:
        ...

    def restore(
        self,
        items: Sequence[StockLine],
        *,
        reference: str | None = None,
        compensates: str | None = None,
    ) -> bool:
        ...


class PriceResolver(Protocol):
    def get_list_price(self, product_id: int) -> Decimal | None:
        ...

    def get_latest_cost(self, product_id: int) -> Decimal | None:
        ...


class InvoiceIssuer(Protocol):
    def create_invoice(
        self,
        *,
        customer_id: int,
        total_amount: Decimal,
        status: InvoiceStatus,
        sale_id: int,
    ) -> int | None:
        ...

    def add_payment(self, invoice_id: int, amount: Decimal) -> None:
        ...


@dataclass
class Gateways:
    stock: StockLedger
    prices: PriceResolver
    invoices: InvoiceIssuer | None = None  # None = facturation désactivée


# ---------- HTTP ----------
def _money_str(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


class _HttpGateway:
    service_name = "upstream"

    def __init__(self, base_url: str, timeout: float, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, payload: dict | None = None) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(
                method,
                url,
                json=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("%s %s %s failed: %s", self.service_name, method, url, exc)
            raise UpstreamUnavailable(f"{self.service_name} unavailable") from exc

    @staticmethod
    def _json(resp: requests.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _unavailable(self, resp: requests.Response) -> UpstreamUnavailable:
        logger.error(
            "%s answered %s: %s",
            self.service_name,
            resp.status_code,
            resp.text[:500],
        )
        return UpstreamUnavailable(
            f"{self.service_name} unavailable",
            details={"status": resp.status_code},
        )


class HttpStockLedger(_HttpGateway):
    service_name = "Stock service"

    def reserve(self, items: Sequence[StockLine], *, reference: str | None = None) -> None:
        payload = {"items": [it.to_payload() for it in items], "reference": reference}
        resp = self._request("POST", "/products/stock/sell-batch", payload)
        if resp.status_code == 409:
            body = self._json(resp)
            raise ConflictError(body.get("error", "Insufficient stock"), details=body.get("details"))
        if not resp.ok:
            raise self._unavailable(resp)

    def restore(
        self,
        items: Sequence[StockLine],
        *,
        reference: str | None = None,
        compensates: str | None = None,
    ) -> bool:
        payload = {
            "items": [it.to_payload() for it in items],
            "reference": reference,
            "compensates": compensates,
        }
        resp = self._request("POST", "/products/stock/restore-batch", payload)
        if resp.status_code == 404:
            body = self._json(resp)
            raise NotFoundError(body.get("error", "Some products were not found"), details=body.get("details"))
        if not resp.ok:
            raise self._unavailable(resp)
        return bool(self._json(resp).get("applied", True))


class HttpPriceResolver(_HttpGateway):
    service_name = "Products service"

    def _decimal_or_none(self, path: str, field: str) -> Decimal | None:
        resp = self._request("GET", path)
        if resp.status_code == 404:
            return None
        if not resp.ok:
            raise self._unavailable(resp)
        value = self._json(resp).get(field)
        if value is None:
            return None
        return Decimal(str(value))

    def get_list_price(self, product_id: int) -> Decimal | None:
        return self._decimal_or_none(f"/products/{product_id}", "price")

    def get_latest_cost(self, product_id: int) -> Decimal | None:
        return self._decimal_or_none(f"/products/purchases/latest/{product_id}", "price_per_quantity")


class HttpInvoiceIssuer(_HttpGateway):
    service_name = "Invoices service"

    def create_invoice(
        self,
        *,
        customer_id: int,
        total_amount: Decimal,
        status: InvoiceStatus,
        sale_id: int,
    ) -> int | None:
        resp = self._request(
            "POST",
            "/invoices",
            {
                "customer_id": customer_id,
                "total_amount": _money_str(total_amount),
                "status": status.value,
                "sales": [sale_id],
            },
        )
        if not resp.ok:
            raise self._unavailable(resp)
        invoice_id = self._json(resp).get("id")
        return int(invoice_id) if invoice_id is not None else None

    def add_payment(self, invoice_id: int, amount: Decimal) -> None:
        resp = self._request("POST", f"/invoices/{invoice_id}/payments", {"amount": _money_str(amount)})
        if not resp.ok:
            raise self._unavailable(resp)


# ---------- Local (même process, transaction de stockage dédiée) ----------
class LocalStockLedger:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def reserve(self, items: Sequence[StockLine], *, reference: str | None = None) -> None:
        with self._session_factory() as db, db.begin():
            stock_ledger.reserve_batch(db, items, reference=reference)

    def restore(
        self,
        items: Sequence[StockLine],
        *,
        reference: str | None = None,
        compensates: str | None = None,
    ) -> bool:
        with self._session_factory() as db, db.begin():
            return stock_ledger.restore_batch(db, items, reference=reference, compensates=compensates)


class LocalPriceResolver:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get_list_price(self, product_id: int) -> Decimal | None:
        with self._session_factory() as db:
            return pricing.get_list_price(db, product_id)

    def get_latest_cost(self, product_id: int) -> Decimal | None:
        with self._session_factory() as db:
            return pricing.get_latest_purchase_cost(db, product_id)


def build_gateways(settings: Settings, session_factory: SessionFactory) -> Gateways:
    timeout = settings.upstream_timeout_seconds

    if settings.products_service_url:
        stock: StockLedger = HttpStockLedger(settings.products_service_url, timeout)
        prices: PriceResolver = HttpPriceResolver(settings.products_service_url, timeout)
    else:
        stock = LocalStockLedger(session_factory)
        prices = LocalPriceResolver(session_factory)

    invoices: InvoiceIssuer | None = None
    if settings.invoicing_enabled:
        invoices = HttpInvoiceIssuer(settings.invoices_service_url, timeout)
    else:
        logger.info("invoicing disabled (no INVOICES_SERVICE_URL or DISABLE_INVOICING=true)")

    return Gateways(stock=stock, prices=prices, invoices=invoices)
