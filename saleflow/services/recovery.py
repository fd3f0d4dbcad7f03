"""
Recovery des sagas interrompues.

Rejoue la compensation des sagas de vente restées RESERVING_STOCK /
PERSISTING / COMPENSATING (process tué, restore compensatoire en échec...).
Le restore est fait avec `compensates=<référence de la saga>` : le ledger
n'applique rien si aucune réservation n'a été journalisée sous cette
référence, ni deux fois la même compensation.

Les retours à moitié appliqués (INCONSISTENT) sont seulement remontés.

Usage :
    python -m saleflow.services.recovery
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from saleflow.app.db.base import utcnow
from saleflow.app.db.models.core_types import PENDING_SALE_STATES, SagaKind, SagaState
from saleflow.services import saga_log
from saleflow.services.gateways import SessionFactory, StockLedger
from saleflow.services.saga_log import SagaHandle

logger = logging.getLogger(__name__)

SALE_KINDS = (SagaKind.create_sale, SagaKind.add_items)
# au-delà du timeout upstream : une saga plus jeune est peut-être encore en vol
DEFAULT_STALE_AFTER = timedelta(seconds=60)


@dataclass
class RecoveryReport:
    restored: list[int] = field(default_factory=list)
    nothing_to_undo: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    unresolved: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, list[int]]:
        return {
            "restored": self.restored,
            "nothing_to_undo": self.nothing_to_undo,
            "failed": self.failed,
            "unresolved": self.unresolved,
        }


def recover_pending_sagas(
    session_factory: SessionFactory,
    stock: StockLedger,
    *,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> RecoveryReport:
    report = RecoveryReport()
    cutoff = utcnow() - stale_after

    with session_factory() as db:
        pending = [
            (SagaHandle(id=r.id, kind=r.kind, reference=r.reference), saga_log.compensation_lines(r))
            for r in saga_log.list_sagas(
                db,
                states=PENDING_SALE_STATES,
                kinds=SALE_KINDS,
                updated_before=cutoff,
                limit=1000,
            )
        ]
        report.unresolved = [
            r.id
            for r in saga_log.list_sagas(
                db,
                states=[SagaState.inconsistent, SagaState.restoring_stock],
                kinds=[SagaKind.process_return],
                updated_before=cutoff,
                limit=1000,
            )
        ]

    for saga, lines in pending:
        if not lines:
            saga_log.transition(session_factory, saga, SagaState.aborted, error="recovered: empty compensation")
            report.nothing_to_undo.append(saga.id)
            continue
        try:
            applied = stock.restore(
                lines,
                reference=saga.compensation_reference,
                compensates=saga.reference,
            )
        except Exception:
            logger.exception("recovery: restore failed for saga %s, left pending", saga.id)
            report.failed.append(saga.id)
            continue

        if applied:
            report.restored.append(saga.id)
            note = "recovered: reserved stock restored"
        else:
            report.nothing_to_undo.append(saga.id)
            note = "recovered: nothing to undo"
        saga_log.transition(session_factory, saga, SagaState.aborted, error=note)
        logger.info("recovery: saga %s aborted (%s)", saga.id, note)

    for saga_id in report.unresolved:
        logger.error("recovery: return saga %s needs manual reconciliation", saga_id)

    return report


def main() -> None:
    from saleflow.app.core.config import settings
    from saleflow.app.core.logging import configure_logging
    from saleflow.app.db.session import SessionLocal
    from saleflow.services.gateways import build_gateways

    configure_logging(settings.log_level)
    gateways = build_gateways(settings, SessionLocal)
    report = recover_pending_sagas(SessionLocal, gateways.stock)
    print(f"RECOVERY OK: {report.as_dict()}")


if __name__ == "__main__":
    main()
