"""
Journal durable des sagas.

La compensation prévue est committée AVANT l'appel risqué (reserve /
restore distant) dans sa propre transaction : si le process meurt entre les
deux, la recovery sait quoi rejouer.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from saleflow.app.db.models.core_types import SagaKind, SagaState
from saleflow.app.db.models.models_v1 import SagaRecord
from saleflow.services.gateways import SessionFactory
from saleflow.services.stock_ledger import StockLine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SagaHandle:
    id: int
    kind: SagaKind
    reference: str

    @property
    def compensation_reference(self) -> str:
        return f"{self.reference}:undo"


def _new_reference(kind: SagaKind) -> str:
    return f"{kind.value.lower()}:{uuid.uuid4().hex}"


def open_saga(
    session_factory: SessionFactory,
    kind: SagaKind,
    *,
    state: SagaState,
    compensation: Iterable[StockLine],
    sale_id: int | None = None,
    saleitem_id: int | None = None,
) -> SagaHandle:
    with session_factory() as db, db.begin():
        record = SagaRecord(
            kind=kind,
            state=state,
            sale_id=sale_id,
            saleitem_id=saleitem_id,
            compensation=[line.to_payload() for line in compensation],
            reference=_new_reference(kind),
        )
        db.add(record)
        db.flush()
        handle = SagaHandle(id=record.id, kind=kind, reference=record.reference)
    logger.debug("saga %s opened kind=%s state=%s", handle.id, kind.value, state.value)
    return handle


def set_state(
    db: Session,
    saga: SagaHandle,
    state: SagaState,
    *,
    sale_id: int | None = None,
    error: str | None = None,
) -> None:
    """Transition dans la transaction de l'appelant (commit atomique avec la vente)."""
    record = db.get(SagaRecord, saga.id)
    if record is None:
        raise LookupError(f"saga {saga.id} not found")
    record.state = state
    if sale_id is not None:
        record.sale_id = sale_id
    if error is not None:
        record.error = error[:2000]
    db.flush()
    logger.debug("saga %s -> %s", saga.id, state.value)


def transition(
    session_factory: SessionFactory,
    saga: SagaHandle,
    state: SagaState,
    *,
    sale_id: int | None = None,
    error: str | None = None,
) -> None:
    """Transition dans sa propre transaction."""
    with session_factory() as db, db.begin():
        set_state(db, saga, state, sale_id=sale_id, error=error)


def compensation_lines(record: SagaRecord) -> list[StockLine]:
    return [StockLine.from_payload(raw) for raw in record.compensation or []]


def list_sagas(
    db: Session,
    *,
    states: Iterable[SagaState] | None = None,
    kinds: Iterable[SagaKind] | None = None,
    updated_before: datetime | None = None,
    limit: int = 100,
) -> list[SagaRecord]:
    stmt = select(SagaRecord).order_by(SagaRecord.id.asc()).limit(limit)
    if states is not None:
        stmt = stmt.where(SagaRecord.state.in_(list(states)))
    if kinds is not None:
        stmt = stmt.where(SagaRecord.kind.in_(list(kinds)))
    if updated_before is not None:
        stmt = stmt.where(SagaRecord.updated_at <= updated_before)
    return list(db.execute(stmt).scalars().all())
