import pytest

from pantry_service import crud
from restaurant_common.database import SessionLocal


def test_lock_and_read_missing_ingredient_is_zero(db):
    assert crud.lock_and_read(db, "saffron") == 0


def test_set_quantity_upserts(db):
    crud.set_quantity(db, "tomato", 3)
    db.commit()
    assert crud.lock_and_read(db, "tomato") == 3

    crud.set_quantity(db, "tomato", 7)
    db.commit()
    assert crud.lock_and_read(db, "tomato") == 7
    assert len(crud.get_stock(db)) == 1


def test_set_quantity_rejects_negative(db):
    with pytest.raises(ValueError, match="invalid_quantity"):
        crud.set_quantity(db, "tomato", -1)


def test_decrement_never_goes_negative(db, stock):
    stock(rice=3)
    crud.decrement(db, "rice", 2)
    db.commit()
    assert crud.lock_and_read(db, "rice") == 1

    with pytest.raises(ValueError, match="insufficient_stock:rice"):
        crud.decrement(db, "rice", 2)
    db.rollback()
    assert crud.lock_and_read(db, "rice") == 1


def test_decrement_missing_ingredient(db):
    with pytest.raises(ValueError, match="insufficient_stock:meat"):
        crud.decrement(db, "meat", 1)


def test_increment(db, stock):
    stock(onion=1)
    assert crud.increment(db, "onion", 4) == 5
    assert crud.increment(db, "garlic", 2) == 2
    db.commit()
    assert stock() == {"onion": 5, "garlic": 2}


def test_increment_adds_to_what_is_stored_now(db, stock):
    stock(onion=1)
    assert crud.lock_and_read(db, "onion") == 1

    other = SessionLocal()
    try:
        crud.increment(other, "onion", 3)
        other.commit()
    finally:
        other.close()

    assert crud.increment(db, "onion", 2) == 6
    db.commit()
    assert stock() == {"onion": 6}


def test_ensure_row_leaves_existing_stock_alone(db, stock):
    stock(cheese=4)
    crud.ensure_row(db, "cheese")
    crud.ensure_row(db, "ketchup")
    db.commit()
    assert stock() == {"cheese": 4, "ketchup": 0}


def test_decrement_checks_the_stored_quantity(db, stock):
    stock(rice=3)
    assert crud.lock_and_read(db, "rice") == 3

    other = SessionLocal()
    try:
        crud.decrement(other, "rice", 2)
        other.commit()
    finally:
        other.close()

    with pytest.raises(ValueError, match="insufficient_stock:rice"):
        crud.decrement(db, "rice", 2)
    db.rollback()
    assert stock() == {"rice": 1}


def test_seed_stock_only_when_empty(db):
    assert crud.seed_stock(db) == len(crud.INITIAL_STOCK)
    assert crud.seed_stock(db) == 0
    assert {s.ingredient: s.quantity for s in crud.get_stock(db)} == crud.INITIAL_STOCK


def test_update_order_status_logs_event(db, make_order):
    order_id = make_order({"tomato": 1})
    order = crud.update_order_status(db, order_id, "waiting_ingredients", event_data={"attempt": 1})
    db.commit()

    assert order.status == "waiting_ingredients"
    assert [(e.event_type, e.event_data) for e in order.events] == [("status_waiting_ingredients", {"attempt": 1})]
    assert crud.update_order_status(db, 9999, "cancelled") is None
