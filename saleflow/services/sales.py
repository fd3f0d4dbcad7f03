"""
Saga de vente.

    NORMALIZING -> RESERVING_STOCK -> PERSISTING -> ISSUING_INVOICE -> DONE
    RESERVING_STOCK -> ABORTED
    PERSISTING -> COMPENSATING -> ABORTED

Règles :
- normalisation / réservation : échec immédiat, aucun effet de bord
- échec de la transaction locale après réservation : UN restore compensatoire,
  best-effort, non retenté. S'il échoue, la saga reste COMPENSATING dans
  saga_records et la recovery la rejouera.
- la facture part en tâche dispatchée, son échec ne casse jamais la vente.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select

from saleflow.app.core.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    SaleflowError,
    UpstreamUnavailable,
    ValidationError,
)
from saleflow.app.db.base import utcnow
from saleflow.app.db.models.core_types import CostFallback, SagaKind, SagaState
from saleflow.app.db.models.models_v1 import Sale, SaleItem
from saleflow.services import saga_log
from saleflow.services.gateways import PriceResolver, SessionFactory, StockLedger
from saleflow.services.invoicing import InvoiceDispatcher, InvoiceRequest
from saleflow.services.normalizer import (
    ZERO,
    NormalizedItem,
    normalize_items,
    pricing_alert,
    round_money,
)
from saleflow.services.profit import (
    ProfitRecalculator,
    line_gross_profit,
    replace_profit,
    resolve_effective_cost,
)
from saleflow.services.saga_log import SagaHandle
from saleflow.services.sales_queries import sale_payload
from saleflow.services.stock_ledger import StockLine

logger = logging.getLogger(__name__)


def _positive_id(value: Any, message: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(message) from None
    if number <= 0:
        raise ValidationError(message)
    return number


def _paid_amount(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    try:
        paid = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("paid_amount must be a number") from None
    if not paid.is_finite() or paid < 0:
        raise ValidationError("paid_amount must be >= 0")
    return round_money(paid)


def _as_list(items: Any) -> list:
    """Un objet ligne seul vaut une liste d'un élément."""
    if isinstance(items, Mapping):
        return [items]
    return list(items or [])


@dataclass(frozen=True)
class PricedItem:
    item: NormalizedItem
    effective_cost: Decimal

    @property
    def gross_profit(self) -> Decimal:
        return line_gross_profit(self.item.sale_price_per_quantity, self.effective_cost, self.item.quantity_sold)


class SaleOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        stock: StockLedger,
        prices: PriceResolver,
        invoices: InvoiceDispatcher,
        cost_fallback: CostFallback,
    ):
        self._session_factory = session_factory
        self.stock = stock
        self.prices = prices
        self.invoices = invoices
        self.cost_fallback = cost_fallback
        self.recalculator = ProfitRecalculator(prices, cost_fallback)

    # ---------- create ----------
    def create_sale(
        self,
        *,
        customer_id: Any,
        items: Iterable[Mapping[str, Any]] | Mapping[str, Any] | None,
        paid_amount: Any = None,
        sold_at: datetime | None = None,
    ) -> dict[str, Any]:
        customer_id = _positive_id(customer_id, "customer_id is required")
        paid = _paid_amount(paid_amount)
        raw_items = _as_list(items)

        if not raw_items:
            return self._create_empty_sale(customer_id, paid, sold_at)

        # NORMALIZING
        normalized = normalize_items(raw_items, self.prices)
        batch = [n.stock_line() for n in normalized]

        # RESERVING_STOCK (compensation committée avant l'appel)
        saga = saga_log.open_saga(
            self._session_factory,
            SagaKind.create_sale,
            state=SagaState.reserving_stock,
            compensation=batch,
        )
        self._reserve(saga, batch)

        # PERSISTING
        try:
            saga_log.transition(self._session_factory, saga, SagaState.persisting)
            priced = self._price_items(normalized)
            alerts = [a for a in (pricing_alert(p.item) for p in priced) if a is not None]

            next_state = SagaState.issuing_invoice if self.invoices.enabled else SagaState.done
            with self._session_factory() as db, db.begin():
                sale = Sale(customer_id=customer_id, sold_at=sold_at or utcnow())
                db.add(sale)
                db.flush()

                for p in priced:
                    db.add(self._sale_item(sale.id, p.item))
                db.flush()

                replace_profit(db, sale.id, sum((p.gross_profit for p in priced), ZERO))
                saga_log.set_state(db, saga, next_state, sale_id=sale.id)
                result = sale_payload(db, sale.id, alerts=alerts)
        except Exception as exc:
            self._compensate(saga, batch, exc)
            if isinstance(exc, SaleflowError):
                raise
            raise InternalError(str(exc) or "Failed to create sale") from exc

        for alert in alerts:
            logger.info("pricing alert sale_id=%s %s", result["id"], alert)

        # ISSUING_INVOICE
        self._dispatch_invoice(saga, customer_id, result["id"], result["total_amount"], paid)
        return result

    def _create_empty_sale(self, customer_id: int, paid: Decimal, sold_at: datetime | None) -> dict[str, Any]:
        with self._session_factory() as db, db.begin():
            sale = Sale(customer_id=customer_id, sold_at=sold_at or utcnow())
            db.add(sale)
            db.flush()
            result = sale_payload(db, sale.id, alerts=[])

        if paid > 0:
            self._dispatch_invoice(None, customer_id, result["id"], ZERO, paid)
        result["message"] = "Sale created (no items provided)"
        return result

    # ---------- add items ----------
    def add_items(self, sale_id: Any, items: Iterable[Mapping[str, Any]] | Mapping[str, Any] | None) -> dict[str, Any]:
        """Même saga que create_sale, profit recalculé sur TOUTE la vente."""
        sale_id = _positive_id(sale_id, "Invalid sale id")
        raw_items = _as_list(items)
        if not raw_items:
            raise ValidationError("No items provided")

        with self._session_factory() as db:
            if db.get(Sale, sale_id) is None:
                raise NotFoundError("Sale not found")
            already = set(db.execute(select(SaleItem.product_id).where(SaleItem.sale_id == sale_id)).scalars())

        normalized = normalize_items(raw_items, self.prices)
        for index, n in enumerate(normalized):
            if n.product_id in already:
                raise ValidationError(f"items[{index}].product_id {n.product_id} is already on sale {sale_id}")
        batch = [n.stock_line() for n in normalized]

        saga = saga_log.open_saga(
            self._session_factory,
            SagaKind.add_items,
            state=SagaState.reserving_stock,
            compensation=batch,
            sale_id=sale_id,
        )
        self._reserve(saga, batch)

        try:
            saga_log.transition(self._session_factory, saga, SagaState.persisting)
            with self._session_factory() as db, db.begin():
                sale = db.execute(select(Sale).where(Sale.id == sale_id).with_for_update()).scalar_one_or_none()
                if sale is None:
                    raise NotFoundError("Sale not found")

                for n in normalized:
                    db.add(self._sale_item(sale_id, n))
                db.flush()

                self.recalculator.recompute(db, sale_id)
                saga_log.set_state(db, saga, SagaState.done)
                alerts = [a for a in (pricing_alert(n) for n in normalized) if a is not None]
                result = sale_payload(db, sale_id, alerts=alerts)
        except Exception as exc:
            self._compensate(saga, batch, exc)
            if isinstance(exc, SaleflowError):
                raise
            raise InternalError(str(exc) or "Failed to add sale items") from exc

        return result

    # ---------- steps ----------
    def _reserve(self, saga: SagaHandle, batch: Sequence[StockLine]) -> None:
        try:
            self.stock.reserve(batch, reference=saga.reference)
        except (ConflictError, ValidationError, NotFoundError) as exc:
            # refus net du ledger : rien n'a été décrémenté
            saga_log.transition(self._session_factory, saga, SagaState.aborted, error=exc.message)
            raise
        except Exception as exc:
            # issue inconnue (timeout...) : la saga reste RESERVING_STOCK,
            # la recovery restaurera seulement si le ledger a journalisé la réservation
            logger.error("stock reservation failed for saga %s: %s", saga.id, exc)
            saga_log.transition(self._session_factory, saga, SagaState.reserving_stock, error=str(exc))
            if isinstance(exc, UpstreamUnavailable):
                raise
            raise UpstreamUnavailable("Stock service unavailable") from exc

    def _price_items(self, normalized: Sequence[NormalizedItem]) -> list[PricedItem]:
        priced: list[PricedItem] = []
        for n in normalized:
            cost = resolve_effective_cost(
                self.prices.get_latest_cost(n.product_id),
                product_id=n.product_id,
                unit_price=n.sale_price_per_quantity,
                fallback=self.cost_fallback,
            )
            priced.append(PricedItem(item=n, effective_cost=cost))
        return priced

    @staticmethod
    def _sale_item(sale_id: int, n: NormalizedItem) -> SaleItem:
        return SaleItem(
            sale_id=sale_id,
            product_id=n.product_id,
            quantity_sold=n.quantity_sold,
            sale_price_per_quantity=n.sale_price_per_quantity,
            total_sale_price=n.total_sale_price,
        )

    def _compensate(self, saga: SagaHandle, batch: Sequence[StockLine], exc: BaseException) -> None:
        logger.error("persisting saga %s failed, restoring reserved stock: %s", saga.id, exc)
        try:
            saga_log.transition(self._session_factory, saga, SagaState.compensating, error=str(exc))
            applied = self.stock.restore(
                batch,
                reference=saga.compensation_reference,
                compensates=saga.reference,
            )
        except Exception:
            logger.exception("compensating restore failed for saga %s, stock stays reserved", saga.id)
            return

        if not applied:
            logger.warning("compensating restore for saga %s found nothing to undo", saga.id)
        try:
            saga_log.transition(self._session_factory, saga, SagaState.aborted)
        except Exception:
            logger.exception("could not mark saga %s aborted", saga.id)

    def _dispatch_invoice(
        self,
        saga: SagaHandle | None,
        customer_id: int,
        sale_id: int,
        total_amount: Decimal,
        paid: Decimal,
    ) -> None:
        if not self.invoices.enabled:
            return
        request = InvoiceRequest(
            customer_id=customer_id,
            sale_id=sale_id,
            total_amount=round_money(total_amount),
            paid_amount=paid,
        )
        on_complete = None
        if saga is not None:
            on_complete = self._invoice_finished(saga)
        self.invoices.dispatch(request, on_complete=on_complete)

    def _invoice_finished(self, saga: SagaHandle):
        def _done(invoice_id: int | None, error: BaseException | None) -> None:
            message = None
            if error is not None:
                message = f"invoice not issued: {error}"
            saga_log.transition(self._session_factory, saga, SagaState.done, error=message)

        return _done
