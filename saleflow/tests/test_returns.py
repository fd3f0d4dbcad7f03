from decimal import Decimal

import pytest
from sqlalchemy import select

from saleflow.app.core.errors import InternalError, NotFoundError, UpstreamUnavailable, ValidationError
from saleflow.app.db.models.core_types import CostFallback, SagaKind, SagaState
from saleflow.app.db.models.models_v1 import ProfitTracker, SagaRecord, SaleItem
from saleflow.services.profit import ProfitRecalculator
from saleflow.services.returns import ReturnProcessor, returned_quantity, returns_for_sale


class BrokenRecalculator:
    def recompute(self, db, sale_id):
        raise RuntimeError("profit table locked")


@pytest.fixture
def processor(session_factory, stock, prices):
    return ReturnProcessor(
        session_factory,
        stock=stock,
        recalculator=ProfitRecalculator(prices, CostFallback.error),
    )


@pytest.fixture
def sold_line(orchestrator, make_product):
    """5 unités vendues à 10 (coût 6) sur un stock de 10."""
    pid = make_product(quantity="10", price="10.00", cost="6.00")
    sale = orchestrator.create_sale(customer_id=1, items=[{"product_id": pid, "quantity": 5, "unit_price": 10}])
    return pid, sale["id"], sale["items"][0]["id"]


def _line(session_factory, saleitem_id):
    with session_factory() as db:
        it = db.get(SaleItem, saleitem_id)
        return it.quantity_sold, it.total_sale_price


def _return_sagas(session_factory):
    with session_factory() as db:
        return [
            (r.state, r.error)
            for r in db.execute(
                select(SagaRecord).where(SagaRecord.kind == SagaKind.process_return).order_by(SagaRecord.id)
            ).scalars()
        ]


def test_return_updates_line_stock_and_profit(processor, sold_line, stock_of, session_factory):
    pid, sale_id, saleitem_id = sold_line

    result = processor.process_return(saleitem_id, "2")

    assert result == {
        "sale_update": {
            "sale_id": sale_id,
            "saleitem_id": saleitem_id,
            "new_quantity_sold": Decimal("3"),
            "new_total_sale_price": Decimal("30.00"),
            "sale_total_amount": Decimal("30.00"),
        }
    }
    assert stock_of(pid) == Decimal("7")
    assert _line(session_factory, saleitem_id) == (Decimal("3"), Decimal("30"))
    assert _return_sagas(session_factory) == [(SagaState.done, None)]

    with session_factory() as db:
        tracker = db.execute(select(ProfitTracker).where(ProfitTracker.sale_id == sale_id)).scalar_one()
        assert tracker.gross_profit == Decimal("12.00")


def test_successive_partial_returns_are_capped_by_current_quantity(processor, sold_line, stock_of, session_factory):
    pid, _, saleitem_id = sold_line

    processor.process_return(saleitem_id, 2)
    processor.process_return(saleitem_id, 3)
    assert _line(session_factory, saleitem_id) == (Decimal("0"), Decimal("0"))

    with pytest.raises(ValidationError) as excinfo:
        processor.process_return(saleitem_id, "0.01")
    assert excinfo.value.message == "Return quantity cannot exceed item quantity_sold"
    assert stock_of(pid) == Decimal("10")


def test_over_cap_return_mutates_nothing(processor, stock, sold_line, stock_of, session_factory):
    pid, sale_id, saleitem_id = sold_line

    with pytest.raises(ValidationError):
        processor.process_return(saleitem_id, 6)

    assert stock.restore_calls == []
    assert stock_of(pid) == Decimal("5")
    assert _line(session_factory, saleitem_id) == (Decimal("5"), Decimal("50"))
    assert _return_sagas(session_factory) == []
    with session_factory() as db:
        tracker = db.execute(select(ProfitTracker).where(ProfitTracker.sale_id == sale_id)).scalar_one()
        assert tracker.gross_profit == Decimal("20.00")


@pytest.mark.parametrize("qty", [0, "-1", "abc", "1.001"])
def test_invalid_return_quantities(processor, sold_line, qty):
    _, _, saleitem_id = sold_line
    with pytest.raises(ValidationError):
        processor.process_return(saleitem_id, qty)


def test_unknown_sale_item(processor):
    with pytest.raises(NotFoundError):
        processor.process_return(12345, 1)


def test_recorded_return_keeps_history(processor, sold_line, session_factory):
    _, sale_id, saleitem_id = sold_line

    result = processor.process_return(saleitem_id, 1, reason="damaged", record=True)

    assert result["message"] == "Return recorded"
    assert result["return"]["reason"] == "damaged"
    processor.process_return(saleitem_id, "1.5", record=True)

    with session_factory() as db:
        assert returned_quantity(db, saleitem_id) == Decimal("2.5")
        assert [r.quantity_returned for r in returns_for_sale(db, sale_id)] == [Decimal("1"), Decimal("1.5")]


def test_restore_failure_flags_the_saga(processor, stock, sold_line, session_factory):
    _, _, saleitem_id = sold_line
    stock.fail_restore = ConnectionError("connection reset")

    with pytest.raises(UpstreamUnavailable) as excinfo:
        processor.process_return(saleitem_id, 1)

    assert excinfo.value.message == "Failed to restore stock"
    assert _line(session_factory, saleitem_id) == (Decimal("5"), Decimal("50"))
    [(state, error)] = _return_sagas(session_factory)
    assert state is SagaState.inconsistent


def test_local_failure_after_restore_is_left_inconsistent(session_factory, stock, sold_line, stock_of):
    """Le stock est restitué mais la ligne ne bouge pas : signalé, pas corrigé."""
    pid, _, saleitem_id = sold_line
    processor = ReturnProcessor(session_factory, stock=stock, recalculator=BrokenRecalculator())

    with pytest.raises(InternalError):
        processor.process_return(saleitem_id, 2)

    assert stock_of(pid) == Decimal("7")
    assert _line(session_factory, saleitem_id) == (Decimal("5"), Decimal("50"))
    [(state, error)] = _return_sagas(session_factory)
    assert state is SagaState.inconsistent
    assert error == "profit table locked"
