from datetime import datetime

from pydantic import BaseModel

from saleflow.app.db.models.core_types import SagaKind, SagaState


class SagaRead(BaseModel):
    id: int
    kind: SagaKind
    state: SagaState
    sale_id: int | None
    saleitem_id: int | None
    compensation: list[dict]
    reference: str
    error: str | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
