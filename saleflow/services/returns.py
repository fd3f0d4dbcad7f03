"""
Traitement des retours.

    valider contre l'état courant de la ligne -> restore stock -> transaction
    locale (ligne + ProductReturn + profit recalculé)

Le plafond est la quantité COURANTE de la ligne (pas l'originale) : des
retours partiels successifs se composent correctement.

Si la transaction locale échoue après un restore réussi, ledger et ventes
restent incohérents : la saga passe INCONSISTENT, rien n'est corrigé
automatiquement.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select

from saleflow.app.core.errors import (
    InternalError,
    NotFoundError,
    SaleflowError,
    UpstreamUnavailable,
    ValidationError,
)
from saleflow.app.db.models.core_types import SagaKind, SagaState
from saleflow.app.db.models.models_v1 import ProductReturn, SaleItem
from saleflow.services import saga_log
from saleflow.services.gateways import SessionFactory, StockLedger
from saleflow.services.normalizer import ZERO, round_money
from saleflow.services.profit import ProfitRecalculator
from saleflow.services.sales_queries import get_sale_item, sale_total
from saleflow.services.stock_ledger import StockLine

logger = logging.getLogger(__name__)


def _quantity(value: Any) -> Decimal:
    try:
        qty = Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationError("quantity_returned must be > 0") from None
    if not qty.is_finite() or qty <= 0:
        raise ValidationError("quantity_returned must be > 0")
    if qty != qty.quantize(Decimal("0.01")):
        raise ValidationError("quantity_returned allows at most 2 decimals")
    return qty


def _check_cap(quantity_returned: Decimal, quantity_sold: Decimal) -> None:
    if quantity_returned > quantity_sold:
        raise ValidationError(
            "Return quantity cannot exceed item quantity_sold",
            details={"quantity_sold": quantity_sold, "quantity_returned": quantity_returned},
        )


def return_payload(row: ProductReturn) -> dict[str, Any]:
    return {
        "id": row.id,
        "saleitem_id": row.saleitem_id,
        "quantity_returned": row.quantity_returned,
        "reason": row.reason,
        "returned_at": row.returned_at,
    }


class ReturnProcessor:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        stock: StockLedger,
        recalculator: ProfitRecalculator,
    ):
        self._session_factory = session_factory
        self.stock = stock
        self.recalculator = recalculator

    def process_return(
        self,
        saleitem_id: Any,
        quantity_returned: Any,
        *,
        reason: str | None = None,
        record: bool = False,
    ) -> dict[str, Any]:
        """
        record=True : enregistre aussi un ProductReturn (POST /returns).
        Retourne {"sale_update": {...}} (+ "return" si record).
        """
        try:
            saleitem_id = int(saleitem_id)
        except (TypeError, ValueError):
            raise ValidationError("saleitem_id is required") from None
        if saleitem_id <= 0:
            raise ValidationError("saleitem_id is required")
        qty = _quantity(quantity_returned)

        with self._session_factory() as db:
            item = get_sale_item(db, saleitem_id)
            _check_cap(qty, Decimal(item.quantity_sold))
            sale_id, product_id = item.sale_id, item.product_id

        line = StockLine(product_id=product_id, quantity=qty)
        saga = saga_log.open_saga(
            self._session_factory,
            SagaKind.process_return,
            state=SagaState.restoring_stock,
            compensation=[line],
            sale_id=sale_id,
            saleitem_id=saleitem_id,
        )

        try:
            self.stock.restore([line], reference=saga.reference)
        except (NotFoundError, ValidationError) as exc:
            saga_log.transition(self._session_factory, saga, SagaState.aborted, error=exc.message)
            raise
        except Exception as exc:
            logger.error("stock restore failed for return saga %s: %s", saga.id, exc)
            # issue inconnue côté ledger : on ne sait pas si le stock a bougé
            saga_log.transition(
                self._session_factory,
                saga,
                SagaState.inconsistent,
                error=f"restore outcome unknown: {exc}",
            )
            if isinstance(exc, SaleflowError):
                raise
            raise UpstreamUnavailable("Failed to restore stock") from exc

        try:
            with self._session_factory() as db, db.begin():
                result = self._apply(db, saga, saleitem_id, qty, reason=reason, record=record)
        except Exception as exc:
            logger.error(
                "return saga %s: stock restored (%s x product %s) but sale line update failed: %s",
                saga.id,
                qty,
                product_id,
                exc,
            )
            try:
                saga_log.transition(self._session_factory, saga, SagaState.inconsistent, error=str(exc))
            except Exception:
                logger.exception("could not flag return saga %s", saga.id)
            if isinstance(exc, SaleflowError):
                raise
            raise InternalError(str(exc) or "Failed to process return") from exc

        return result

    def _apply(
        self,
        db,
        saga: saga_log.SagaHandle,
        saleitem_id: int,
        qty: Decimal,
        *,
        reason: str | None,
        record: bool,
    ) -> dict[str, Any]:
        item = db.execute(select(SaleItem).where(SaleItem.id == saleitem_id).with_for_update()).scalar_one_or_none()
        if item is None:
            raise NotFoundError("Sale item not found")
        # un retour concurrent a pu passer entre la validation et ici
        _check_cap(qty, Decimal(item.quantity_sold))

        new_qty = Decimal(item.quantity_sold) - qty
        new_total = max(ZERO, round_money(new_qty * Decimal(item.sale_price_per_quantity)))
        item.quantity_sold = new_qty
        item.total_sale_price = new_total

        returned = None
        if record:
            returned = ProductReturn(saleitem_id=saleitem_id, quantity_returned=qty, reason=reason)
            db.add(returned)
        db.flush()

        sale_id = item.sale_id
        self.recalculator.recompute(db, sale_id)
        saga_log.set_state(db, saga, SagaState.done)

        result: dict[str, Any] = {
            "sale_update": {
                "sale_id": sale_id,
                "saleitem_id": saleitem_id,
                "new_quantity_sold": new_qty,
                "new_total_sale_price": new_total,
                "sale_total_amount": sale_total(db, sale_id),
            }
        }
        if returned is not None:
            result["message"] = "Return recorded"
            result["return"] = return_payload(returned)
        return result


def list_returns(db) -> list[ProductReturn]:
    return list(db.execute(select(ProductReturn).order_by(ProductReturn.returned_at, ProductReturn.id)).scalars())


def get_return(db, return_id: int) -> ProductReturn:
    row = db.get(ProductReturn, return_id)
    if row is None:
        raise NotFoundError("Return not found")
    return row


def returns_for_sale(db, sale_id: int) -> list[ProductReturn]:
    """[] si la vente n'existe pas ou n'a pas de lignes."""
    return list(
        db.execute(
            select(ProductReturn)
            .join(SaleItem, SaleItem.id == ProductReturn.saleitem_id)
            .where(SaleItem.sale_id == sale_id)
            .order_by(ProductReturn.id)
        ).scalars()
    )


def returned_quantity(db, saleitem_id: int) -> Decimal:
    """Total retourné pour une ligne, reconstruit depuis les ProductReturn."""
    rows = db.execute(select(ProductReturn.quantity_returned).where(ProductReturn.saleitem_id == saleitem_id)).scalars()
    return sum((Decimal(q) for q in rows), ZERO)
