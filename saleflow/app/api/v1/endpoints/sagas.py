from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from saleflow.app.api.deps import get_db, get_gateways, get_session_factory
from saleflow.app.db.models.core_types import SagaState
from saleflow.app.schemas.sagas import SagaRead
from saleflow.services import saga_log
from saleflow.services.gateways import Gateways, SessionFactory
from saleflow.services.recovery import recover_pending_sagas

router = APIRouter(prefix="/sagas")


@router.get("", response_model=list[SagaRead])
def list_sagas(
    state: SagaState | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    states = [state] if state is not None else None
    return saga_log.list_sagas(db, states=states, limit=limit)


@router.post("/recover")
def recover(
    stale_after_seconds: int = Query(default=60, ge=0),
    session_factory: SessionFactory = Depends(get_session_factory),
    gateways: Gateways = Depends(get_gateways),
):
    report = recover_pending_sagas(
        session_factory,
        gateways.stock,
        stale_after=timedelta(seconds=stale_after_seconds),
    )
    return report.as_dict()
