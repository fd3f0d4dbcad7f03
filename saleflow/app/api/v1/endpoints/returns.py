from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from saleflow.app.api.deps import get_db, get_return_processor
from saleflow.app.schemas.returns import ReturnCreate
from saleflow.services import returns as returns_service
from saleflow.services.returns import ReturnProcessor

router = APIRouter(prefix="/returns")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_return(payload: ReturnCreate, processor: ReturnProcessor = Depends(get_return_processor)):
    return processor.process_return(
        payload.saleitem_id,
        payload.quantity_returned,
        reason=payload.reason,
        record=True,
    )


@router.get("")
def list_returns(db: Session = Depends(get_db)):
    return [returns_service.return_payload(r) for r in returns_service.list_returns(db)]


@router.get("/by-sale/{sale_id}")
def returns_for_sale(sale_id: int, db: Session = Depends(get_db)):
    return [returns_service.return_payload(r) for r in returns_service.returns_for_sale(db, sale_id)]


@router.get("/{return_id}")
def get_return(return_id: int, db: Session = Depends(get_db)):
    return returns_service.return_payload(returns_service.get_return(db, return_id))
