from decimal import Decimal

import pytest
from sqlalchemy import func, select

from saleflow.app.core.errors import (
    ConflictError,
    MissingCostError,
    UpstreamUnavailable,
    ValidationError,
)
from saleflow.app.db.models.core_types import CostFallback, InvoiceStatus, SagaKind, SagaState
from saleflow.app.db.models.models_v1 import ProfitTracker, Sale, SagaRecord, SaleItem, StockTransaction
from saleflow.services.invoicing import InvoiceDispatcher
from saleflow.services.sales import SaleOrchestrator


def _sagas(session_factory):
    with session_factory() as db:
        return [(r.kind, r.state, r.error) for r in db.execute(select(SagaRecord).order_by(SagaRecord.id)).scalars()]


def _count(session_factory, model):
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model)).scalar_one()


def test_create_sale_reserves_stock_and_records_profit(orchestrator, make_product, stock_of, session_factory):
    """
    GIVEN un produit (stock 10, dernier coût 6, prix catalogue 10)
    WHEN on vend 5 unités à 10
    THEN stock 5, total 50, profit brut = net = 20
    """
    pid = make_product(quantity="10", price="10.00", cost="6.00")

    sale = orchestrator.create_sale(
        customer_id=3,
        items=[{"product_id": pid, "quantity": 5, "unit_price": 10}],
    )

    assert stock_of(pid) == Decimal("5")
    assert sale["customer_id"] == 3
    assert sale["total_amount"] == Decimal("50.00")
    assert sale["profit"] == {"gross_profit": Decimal("20.00"), "net_profit": Decimal("20.00")}
    assert sale["alerts"] == []
    assert [(it["product_id"], it["quantity_sold"], it["total_sale_price"]) for it in sale["items"]] == [
        (pid, Decimal("5.00"), Decimal("50.00"))
    ]

    # facture pas encore émise : la saga attend la tâche dispatchée
    assert _sagas(session_factory) == [(SagaKind.create_sale, SagaState.issuing_invoice, None)]


def test_pricing_alert_does_not_block_the_sale(orchestrator, make_product):
    pid = make_product(price="10.00")

    sale = orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 1, "unit_price": 12}])

    assert sale["alerts"] == [{"product_id": pid, "flag": "over_list", "unit_price": 12.0, "list_price": 10.0}]
    assert sale["total_amount"] == Decimal("12.00")


def test_insufficient_stock_leaves_everything_untouched(orchestrator, make_product, stock_of, session_factory):
    a = make_product(name="A", quantity="10")
    b = make_product(name="B", quantity="1")

    with pytest.raises(ConflictError) as excinfo:
        orchestrator.create_sale(
            customer_id=1,
            items=[{"product_id": a, "quantity": 2}, {"product_id": b, "quantity": 2}],
        )

    assert excinfo.value.details["insufficient"] == [{"product_id": b, "requested": 2, "available": 1}]
    assert stock_of(a) == Decimal("10")
    assert stock_of(b) == Decimal("1")
    assert _count(session_factory, Sale) == 0
    assert _count(session_factory, StockTransaction) == 0
    assert _sagas(session_factory)[0][1] is SagaState.aborted


def test_single_item_object_is_a_one_line_sale(orchestrator, make_product, stock_of):
    pid = make_product(quantity="10")

    sale = orchestrator.create_sale(customer_id=1, items={"product_id": pid, "quantity": 2})

    assert [it["product_id"] for it in sale["items"]] == [pid]
    assert sale["total_amount"] == Decimal("20.00")
    assert stock_of(pid) == Decimal("8")


def test_validation_errors_happen_before_any_reservation(orchestrator, stock, make_product):
    pid = make_product()

    with pytest.raises(ValidationError):
        orchestrator.create_sale(customer_id=0, items=[{"product_id": pid, "quantity": 1}])
    with pytest.raises(ValidationError):
        orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 0}])
    with pytest.raises(ValidationError):
        orchestrator.create_sale(customer_id=1, paid_amount="-5", items=[{"product_id": pid, "quantity": 1}])

    assert stock.reserve_calls == []


def test_persist_failure_restores_reserved_stock(orchestrator, stock, make_product, stock_of, session_factory):
    """Aucun coût d'achat + stratégie error : échec APRÈS réservation -> compensation."""
    pid = make_product(quantity="10", cost=None)

    with pytest.raises(MissingCostError):
        orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 4}])

    assert stock_of(pid) == Decimal("10")
    assert _count(session_factory, Sale) == 0
    assert _count(session_factory, SaleItem) == 0

    [(kind, state, error)] = _sagas(session_factory)
    assert state is SagaState.aborted
    assert "No purchase record found" in error

    reference, compensates = stock.restore_calls[0]
    assert reference == f"{compensates}:undo"


def test_failed_compensation_keeps_saga_pending(orchestrator, stock, make_product, stock_of, session_factory):
    pid = make_product(quantity="10", cost=None)
    stock.fail_restore = UpstreamUnavailable("Stock service unavailable")

    with pytest.raises(MissingCostError):
        orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 4}])

    # le stock reste décrémenté, la saga le sait
    assert stock_of(pid) == Decimal("6")
    assert _sagas(session_factory)[0][1] is SagaState.compensating


def test_unknown_reserve_outcome_is_reported_as_upstream_failure(orchestrator, stock, make_product, session_factory):
    pid = make_product()
    stock.fail_reserve = TimeoutError("read timed out")

    with pytest.raises(UpstreamUnavailable):
        orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 1}])

    [(kind, state, error)] = _sagas(session_factory)
    assert state is SagaState.reserving_stock
    assert error == "read timed out"


@pytest.mark.parametrize(
    "fallback, expected_gross",
    [(CostFallback.zero, Decimal("40.00")), (CostFallback.unit_price, Decimal("0.00"))],
)
def test_cost_fallback_strategies(session_factory, stock, prices, make_product, fallback, expected_gross):
    pid = make_product(cost=None)
    orchestrator = SaleOrchestrator(
        session_factory,
        stock=stock,
        prices=prices,
        invoices=InvoiceDispatcher(None),
        cost_fallback=fallback,
    )

    sale = orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 4, "unit_price": 10}])

    assert sale["profit"]["gross_profit"] == expected_gross
    assert _sagas(session_factory)[0][1] is SagaState.done


def test_invoice_is_issued_after_the_sale(orchestrator, issuer, submit, make_product, session_factory):
    pid = make_product()

    sale = orchestrator.create_sale(
        customer_id=9,
        paid_amount="50",
        items=[{"product_id": pid, "quantity": 5, "unit_price": 10}],
    )
    assert issuer.invoices == []

    submit.run_all()

    assert issuer.invoices == [
        {
            "customer_id": 9,
            "total_amount": Decimal("50.00"),
            "status": InvoiceStatus.full,
            "sale_id": sale["id"],
        }
    ]
    assert issuer.payments == [(1, Decimal("50.00"))]
    assert _sagas(session_factory)[0][1] is SagaState.done


def test_invoice_failure_never_breaks_the_sale(orchestrator, issuer, submit, make_product, session_factory):
    pid = make_product()
    issuer.fail_create = RuntimeError("invoices down")

    sale = orchestrator.create_sale(customer_id=9, items=[{"product_id": pid, "quantity": 1}])
    submit.run_all()

    assert _count(session_factory, Sale) == 1
    [(kind, state, error)] = _sagas(session_factory)
    assert state is SagaState.done
    assert error == "invoice not issued: invoices down"
    assert sale["id"] > 0


def test_empty_sale_creates_a_bare_header(orchestrator, issuer, submit, stock, session_factory):
    sale = orchestrator.create_sale(customer_id=4, paid_amount="20", items=[])

    assert sale["message"] == "Sale created (no items provided)"
    assert sale["items"] == []
    assert sale["total_amount"] == Decimal("0")
    assert stock.reserve_calls == []
    assert _sagas(session_factory) == []

    submit.run_all()
    assert issuer.invoices[0]["status"] is InvoiceStatus.credited
    assert issuer.invoices[0]["total_amount"] == Decimal("0.00")


def test_add_items_recomputes_profit_for_the_whole_sale(orchestrator, make_product, stock_of, session_factory):
    a = make_product(name="A", cost="6.00")
    b = make_product(name="B", cost="2.00")

    sale = orchestrator.create_sale(customer_id=1, items=[{"product_id": a, "quantity": 5, "unit_price": 10}])
    updated = orchestrator.add_items(sale["id"], [{"product_id": b, "quantity": 2, "unit_price": 5}])

    assert updated["total_amount"] == Decimal("60.00")
    # (10-6)*5 + (5-2)*2
    assert updated["profit"]["gross_profit"] == Decimal("26.00")
    assert stock_of(b) == Decimal("8")

    with session_factory() as db:
        assert db.execute(select(func.count()).select_from(ProfitTracker)).scalar_one() == 1


def test_add_items_rejects_products_already_on_the_sale(orchestrator, stock, make_product):
    pid = make_product()
    sale = orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 1}])

    with pytest.raises(ValidationError):
        orchestrator.add_items(sale["id"], [{"product_id": pid, "quantity": 1}])
    assert len(stock.reserve_calls) == 1


def test_add_items_failure_is_compensated(orchestrator, make_product, stock_of, session_factory):
    a = make_product(name="A")
    b = make_product(name="B", quantity="3", cost=None)
    sale = orchestrator.create_sale(customer_id=1, items=[{"product_id": a, "quantity": 1}])

    with pytest.raises(MissingCostError):
        orchestrator.add_items(sale["id"], [{"product_id": b, "quantity": 2}])

    assert stock_of(b) == Decimal("3")
    with session_factory() as db:
        items = db.execute(select(SaleItem).where(SaleItem.sale_id == sale["id"])).scalars().all()
        assert [it.product_id for it in items] == [a]
        moves = db.execute(select(StockTransaction.amount_added).where(StockTransaction.product_id == b)).scalars()
        assert sorted(moves) == [Decimal("-2"), Decimal("2")]
