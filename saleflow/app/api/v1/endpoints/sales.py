from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from saleflow.app.api.deps import get_db, get_return_processor, get_sale_orchestrator
from saleflow.app.db.models.models_v1 import SaleItem
from saleflow.app.schemas.returns import ReturnProcess
from saleflow.app.schemas.sales import SaleCreate, SaleItemsAdd
from saleflow.services import sales_queries
from saleflow.services.returns import ReturnProcessor, returned_quantity
from saleflow.services.sales import SaleOrchestrator

router = APIRouter(prefix="/sales")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_sale(payload: SaleCreate, orchestrator: SaleOrchestrator = Depends(get_sale_orchestrator)):
    """
    Vente complète : normalisation -> réservation stock -> persistance
    (+ profit) -> facture dispatchée après la réponse.
    """
    return orchestrator.create_sale(
        customer_id=payload.customer_id,
        items=payload.items,
        paid_amount=payload.paid_amount,
        sold_at=payload.sold_at,
    )


@router.get("")
def list_sales(db: Session = Depends(get_db)):
    return sales_queries.list_sales(db)


@router.get("/items/all")
def list_sale_items(db: Session = Depends(get_db)):
    rows = db.execute(select(SaleItem).order_by(SaleItem.id)).scalars().all()
    return [sales_queries.item_payload(it) for it in rows]


@router.get("/items/{saleitem_id}")
def get_sale_item(saleitem_id: int, db: Session = Depends(get_db)):
    item = sales_queries.get_sale_item(db, saleitem_id)
    payload = sales_queries.item_payload(item)
    payload["quantity_returned"] = returned_quantity(db, saleitem_id)
    return payload


@router.post("/returns/process")
def process_return(payload: ReturnProcess, processor: ReturnProcessor = Depends(get_return_processor)):
    """Mutation de ligne seule (pas de ProductReturn), appelée par le service retours."""
    return processor.process_return(payload.saleitem_id, payload.quantity_returned)


@router.get("/profit/summary")
def profit_summary(
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    db: Session = Depends(get_db),
):
    return sales_queries.profit_summary(db, date_from, date_to)


@router.get("/profit/timeline")
def profit_timeline(
    view: str = "daily",
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    db: Session = Depends(get_db),
):
    """view = daily | weekly | monthly, fenêtre par défaut : 30 derniers jours."""
    return sales_queries.profit_timeline(db, view, date_from, date_to)


@router.get("/profit/transactions")
def profit_transactions(limit: int = 20, offset: int = 0, db: Session = Depends(get_db)):
    # limit borné à 1..100 côté service, pas de 400
    return sales_queries.profit_transactions(db, limit=limit, offset=offset)


@router.get("/{sale_id}")
def get_sale(sale_id: int, db: Session = Depends(get_db)):
    return sales_queries.sale_payload(db, sale_id)


@router.post("/{sale_id}/items", status_code=status.HTTP_201_CREATED)
def add_sale_items(
    sale_id: int,
    payload: SaleItemsAdd,
    orchestrator: SaleOrchestrator = Depends(get_sale_orchestrator),
):
    return orchestrator.add_items(sale_id, payload.items)


@router.delete("/{sale_id}")
def delete_sale(sale_id: int, db: Session = Depends(get_db)):
    """Supprime la vente, ses lignes et son profit. Le stock n'est pas restitué."""
    try:
        sales_queries.delete_sale(db, sale_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {"message": "Sale deleted", "id": sale_id}
