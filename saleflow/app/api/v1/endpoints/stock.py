from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from saleflow.app.api.deps import get_db
from saleflow.app.schemas.stock import BatchRequest, StockTransactionRead
from saleflow.services import stock_ledger

router = APIRouter(prefix="/products/stock")


@router.post("/sell-batch")
def sell_batch(payload: BatchRequest, db: Session = Depends(get_db)):
    """
    Décrément atomique d'un lot.
    - 409 {missing, insufficient} : rien n'est décrémenté
    """
    try:
        stock_ledger.reserve_batch(db, payload.lines(), reference=payload.reference)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {"message": "Stock decremented (batch) successfully", "reference": payload.reference}


@router.post("/restore-batch")
def restore_batch(payload: BatchRequest, db: Session = Depends(get_db)):
    try:
        applied = stock_ledger.restore_batch(
            db,
            payload.lines(),
            reference=payload.reference,
            compensates=payload.compensates,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    message = "Stock restored (batch) successfully" if applied else "Nothing to restore"
    return {"message": message, "applied": applied, "reference": payload.reference}


@router.get("/transactions", response_model=list[StockTransactionRead])
def list_transactions(
    product_id: int | None = None,
    reference: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Journal des mouvements (READ ONLY), plus récents d'abord."""
    return stock_ledger.list_transactions(db, product_id=product_id, reference=reference, limit=limit)
