"""
Émission de facture, en fire-and-forget.

La facture est demandée APRÈS le commit de la vente, dans une tâche
dispatchée : aucun ordre garanti par rapport à la réponse HTTP, et un échec
ne remonte jamais jusqu'à la vente (il est seulement loggé).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional

from saleflow.app.db.models.core_types import InvoiceStatus
from saleflow.services.gateways import InvoiceIssuer

logger = logging.getLogger(__name__)

Submit = Callable[..., Any]
OnComplete = Callable[[Optional[int], Optional[BaseException]], None]

_executor: ThreadPoolExecutor | None = None


def _default_submit(fn: Callable[..., Any], *args: Any) -> Any:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="invoice")
    return _executor.submit(fn, *args)


def shutdown_executor(wait: bool = True) -> None:
    """Attend les factures en vol puis libère le pool (arrêt de l'app)."""
    global _executor
    if _executor is None:
        return
    executor, _executor = _executor, None
    executor.shutdown(wait=wait)


def compute_invoice_status(total_amount: Decimal, paid_amount: Decimal) -> InvoiceStatus:
    if paid_amount <= 0:
        return InvoiceStatus.unpaid
    if paid_amount >= total_amount and total_amount > 0:
        return InvoiceStatus.full
    return InvoiceStatus.credited


@dataclass(frozen=True)
class InvoiceRequest:
    customer_id: int
    sale_id: int
    total_amount: Decimal
    paid_amount: Decimal = Decimal("0")


def issue_invoice(issuer: InvoiceIssuer, request: InvoiceRequest) -> int | None:
    """Crée la facture puis, si paid > 0, enregistre le paiement initial."""
    status = compute_invoice_status(request.total_amount, request.paid_amount)
    invoice_id = issuer.create_invoice(
        customer_id=request.customer_id,
        total_amount=request.total_amount,
        status=status,
        sale_id=request.sale_id,
    )

    if request.paid_amount > 0 and invoice_id:
        try:
            issuer.add_payment(invoice_id, request.paid_amount)
        except Exception:
            logger.exception(
                "initial payment failed invoice_id=%s sale_id=%s amount=%s",
                invoice_id,
                request.sale_id,
                request.paid_amount,
            )

    logger.info("invoice %s issued for sale %s (%s)", invoice_id, request.sale_id, status.value)
    return invoice_id


class InvoiceDispatcher:
    """
    `submit(fn, *args)` : BackgroundTasks.add_task dans une requête FastAPI,
    pool de threads sinon.
    """

    def __init__(self, issuer: InvoiceIssuer | None, submit: Submit | None = None):
        self.issuer = issuer
        self._submit = submit or _default_submit

    @property
    def enabled(self) -> bool:
        return self.issuer is not None

    def dispatch(self, request: InvoiceRequest, on_complete: OnComplete | None = None) -> None:
        if self.issuer is None:
            logger.debug("invoicing disabled, sale %s not invoiced", request.sale_id)
            return
        self._submit(self._run, request, on_complete)

    def _run(self, request: InvoiceRequest, on_complete: OnComplete | None = None) -> None:
        invoice_id: int | None = None
        error: BaseException | None = None
        try:
            invoice_id = issue_invoice(self.issuer, request)
        except Exception as exc:
            error = exc
            logger.exception("invoice issuance failed for sale %s", request.sale_id)

        if on_complete is None:
            return
        try:
            on_complete(invoice_id, error)
        except Exception:
            logger.exception("invoice completion hook failed for sale %s", request.sale_id)
