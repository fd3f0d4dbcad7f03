from decimal import Decimal

import pytest
from sqlalchemy import func, select

from saleflow.app.core.errors import ConflictError, NotFoundError, ValidationError
from saleflow.app.db.models.models_v1 import StockTransaction
from saleflow.services import stock_ledger
from saleflow.services.stock_ledger import StockLine


def _lines(*pairs):
    return [StockLine(product_id=pid, quantity=Decimal(str(q))) for pid, q in pairs]


def _audit_count(session_factory):
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(StockTransaction)).scalar_one()


def test_reserve_batch_is_all_or_nothing(session_factory, make_product, stock_of):
    """
    GIVEN deux produits (10 et 2 en stock)
    WHEN on réserve 5 + 3
    THEN 409 avec le détail, et AUCUN des deux n'est décrémenté
    """
    a = make_product(name="A", quantity="10")
    b = make_product(name="B", quantity="2")

    with pytest.raises(ConflictError) as excinfo:
        with session_factory() as db, db.begin():
            stock_ledger.reserve_batch(db, _lines((a, 5), (b, 3)), reference="r1")

    assert excinfo.value.details == {
        "missing": [],
        "insufficient": [{"product_id": b, "requested": 3, "available": 2}],
    }
    assert stock_of(a) == Decimal("10")
    assert stock_of(b) == Decimal("2")
    assert _audit_count(session_factory) == 0


def test_stock_moving_between_read_and_update_rolls_back_the_batch(session_factory, make_product, stock_of, monkeypatch):
    """
    GIVEN la lecture verrouillée voit B à 5 alors qu'il n'en reste que 2
    WHEN on réserve A:5 + B:3
    THEN l'UPDATE gardé de B échoue, A est annulé avec la transaction
    """
    a = make_product(name="A", quantity="10")
    b = make_product(name="B", quantity="2")
    read_quantities = stock_ledger._current_quantities

    def stale_read(db, product_ids, *, lock=False):
        quantities = read_quantities(db, product_ids, lock=lock)
        if lock:
            quantities[b] = Decimal("5")
        return quantities

    monkeypatch.setattr(stock_ledger, "_current_quantities", stale_read)

    with pytest.raises(ConflictError) as excinfo:
        with session_factory() as db, db.begin():
            stock_ledger.reserve_batch(db, _lines((a, 5), (b, 3)), reference="r-race")

    assert excinfo.value.details == {
        "missing": [],
        "insufficient": [{"product_id": b, "requested": 3, "available": 2}],
    }
    assert stock_of(a) == Decimal("10")
    assert stock_of(b) == Decimal("2")
    assert _audit_count(session_factory) == 0


def test_reserve_unknown_product_is_reported_missing(session_factory, make_product):
    a = make_product(name="A")
    with pytest.raises(ConflictError) as excinfo:
        with session_factory() as db, db.begin():
            stock_ledger.reserve_batch(db, _lines((a, 1), (999, 1)))
    assert excinfo.value.details["missing"] == [999]


def test_reserve_then_restore_logs_every_movement(session_factory, make_product, stock_of):
    a = make_product(name="A", quantity="10")

    with session_factory() as db, db.begin():
        stock_ledger.reserve_batch(db, _lines((a, "2.5")), reference="sale-1")
    assert stock_of(a) == Decimal("7.5")

    with session_factory() as db, db.begin():
        assert stock_ledger.restore_batch(db, _lines((a, "2.5")), reference="sale-1:undo") is True
    assert stock_of(a) == Decimal("10")

    with session_factory() as db:
        rows = db.execute(select(StockTransaction).order_by(StockTransaction.id)).scalars().all()
        assert [(r.amount_added, r.reference) for r in rows] == [
            (Decimal("-2.5"), "sale-1"),
            (Decimal("2.5"), "sale-1:undo"),
        ]


def test_duplicate_products_in_batch_are_summed(session_factory, make_product, stock_of):
    a = make_product(name="A", quantity="5")

    with pytest.raises(ConflictError):
        with session_factory() as db, db.begin():
            stock_ledger.reserve_batch(db, _lines((a, 3), (a, 3)))
    assert stock_of(a) == Decimal("5")

    with session_factory() as db, db.begin():
        stock_ledger.reserve_batch(db, _lines((a, 2), (a, 3)))
    assert stock_of(a) == Decimal("0")


def test_restore_has_no_cap_and_rejects_unknown_products(session_factory, make_product, stock_of):
    a = make_product(name="A", quantity="1")

    with session_factory() as db, db.begin():
        stock_ledger.restore_batch(db, _lines((a, 50)))
    assert stock_of(a) == Decimal("51")

    with pytest.raises(NotFoundError) as excinfo:
        with session_factory() as db, db.begin():
            stock_ledger.restore_batch(db, _lines((a, 1), (404, 1)))
    assert excinfo.value.details == {"missing": [404]}
    assert stock_of(a) == Decimal("51")


def test_compensating_restore_is_applied_once_and_only_after_a_reserve(session_factory, make_product, stock_of):
    a = make_product(name="A", quantity="10")

    # aucune réservation sous cette référence : rien n'est inventé
    with session_factory() as db, db.begin():
        applied = stock_ledger.restore_batch(db, _lines((a, 4)), reference="s:undo", compensates="s")
    assert applied is False
    assert stock_of(a) == Decimal("10")

    with session_factory() as db, db.begin():
        stock_ledger.reserve_batch(db, _lines((a, 4)), reference="s")

    for expected in (True, False):
        with session_factory() as db, db.begin():
            applied = stock_ledger.restore_batch(db, _lines((a, 4)), reference="s:undo", compensates="s")
        assert applied is expected
    assert stock_of(a) == Decimal("10")


@pytest.mark.parametrize("qty", [0, -1])
def test_non_positive_quantities_are_rejected(session_factory, make_product, qty):
    a = make_product(name="A")
    with pytest.raises(ValidationError):
        with session_factory() as db, db.begin():
            stock_ledger.reserve_batch(db, _lines((a, qty)))


def test_empty_batch_is_rejected(session_factory):
    with pytest.raises(ValidationError):
        with session_factory() as db, db.begin():
            stock_ledger.reserve_batch(db, [])
