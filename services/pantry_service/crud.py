from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from restaurant_common.models import INGREDIENTS, IngredientRetry, MarketPurchase, Order, OrderEvent, PantryStock

INITIAL_STOCK = {ingredient: 5 for ingredient in INGREDIENTS}


# -----------------------------
# Stock ledger
# -----------------------------

def _locked_row(db: Session, ingredient: str) -> Optional[PantryStock]:
    return (
        db.query(PantryStock)
        .filter(PantryStock.ingredient == ingredient)
        .populate_existing()
        .with_for_update()
        .first()
    )


def lock_and_read(db: Session, ingredient: str) -> int:
    """Lock the ingredient's row until the transaction ends and return its quantity.

    Missing ingredients read as 0 (nothing to lock).
    """
    row = _locked_row(db, ingredient)
    return int(row.quantity) if row else 0


def ensure_row(db: Session, ingredient: str) -> None:
    """Insert an empty row for the ingredient unless one exists. Does not commit."""
    if db.get_bind().dialect.name == "postgresql":
        insert = postgresql.insert
    else:
        insert = sqlite.insert
    db.execute(
        insert(PantryStock)
        .values(ingredient=ingredient, quantity=0)
        .on_conflict_do_nothing(index_elements=["ingredient"])
    )


def set_quantity(db: Session, ingredient: str, quantity: int) -> PantryStock:
    if quantity < 0:
        raise ValueError("invalid_quantity")

    ensure_row(db, ingredient)
    row = _locked_row(db, ingredient)
    row.quantity = quantity
    db.flush()
    return row


def increment(db: Session, ingredient: str, amount: int) -> int:
    """Add `amount` on top of whatever is stored now. Returns the new quantity."""
    if amount < 0:
        raise ValueError("invalid_quantity")

    ensure_row(db, ingredient)
    (
        db.query(PantryStock)
        .filter(PantryStock.ingredient == ingredient)
        .update({PantryStock.quantity: PantryStock.quantity + amount}, synchronize_session=False)
    )
    db.flush()
    return lock_and_read(db, ingredient)


def decrement(db: Session, ingredient: str, amount: int) -> None:
    if amount <= 0:
        raise ValueError("invalid_quantity")

    # conditional so that two writers can never take the same units
    updated = (
        db.query(PantryStock)
        .filter(PantryStock.ingredient == ingredient)
        .filter(PantryStock.quantity >= amount)
        .update({PantryStock.quantity: PantryStock.quantity - amount}, synchronize_session=False)
    )
    if not updated:
        raise ValueError(f"insufficient_stock:{ingredient}")
    db.flush()


def get_stock(db: Session) -> list[PantryStock]:
    return db.query(PantryStock).order_by(PantryStock.ingredient).all()


def seed_stock(db: Session, stock: Optional[dict[str, int]] = None) -> int:
    """Insert the initial pantry when the table is empty. Returns rows added."""
    if db.query(PantryStock).count():
        return 0
    stock = INITIAL_STOCK if stock is None else stock
    for ingredient, quantity in stock.items():
        db.add(PantryStock(ingredient=ingredient, quantity=quantity))
    db.commit()
    return len(stock)


def reset_stock(db: Session) -> int:
    deleted = db.query(PantryStock).delete(synchronize_session=False)
    db.commit()
    return int(deleted or 0)


# -----------------------------
# Market purchases
# -----------------------------

def record_purchase(
    db: Session,
    *,
    ingredient: str,
    quantity_requested: int,
    quantity_sold: int,
    price_per_unit: Decimal,
) -> MarketPurchase:
    purchase = MarketPurchase(
        ingredient=ingredient,
        quantity_requested=quantity_requested,
        quantity_sold=quantity_sold,
        price_per_unit=price_per_unit,
        total_cost=price_per_unit * quantity_sold,
        purchase_date=dt.datetime.now(dt.timezone.utc),
    )
    db.add(purchase)
    db.flush()
    return purchase


def get_purchases(db: Session, skip: int = 0, limit: int = 100) -> list[MarketPurchase]:
    return (
        db.query(MarketPurchase)
        .order_by(MarketPurchase.purchase_date.desc(), MarketPurchase.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def _day_start(day: dt.date) -> dt.datetime:
    return dt.datetime.combine(day, dt.time.min, tzinfo=dt.timezone.utc)


def _between_days(column, first: dt.date, last: dt.date):
    return (column >= _day_start(first)) & (column < _day_start(last) + dt.timedelta(days=1))


def get_purchases_by_date(db: Session, day: dt.date) -> list[MarketPurchase]:
    return (
        db.query(MarketPurchase)
        .filter(_between_days(MarketPurchase.purchase_date, day, day))
        .order_by(MarketPurchase.purchase_date.desc(), MarketPurchase.id.desc())
        .all()
    )


def summarize_purchases(day: dt.date, purchases: list[MarketPurchase]) -> dict:
    """Totals for one day of purchases, overall and per ingredient."""
    by_ingredient: dict[str, dict] = {}
    for purchase in purchases:
        entry = by_ingredient.setdefault(
            purchase.ingredient,
            {"ingredient": purchase.ingredient, "total_quantity": 0, "total_cost": Decimal("0.00"), "purchases": []},
        )
        entry["total_quantity"] += purchase.quantity_sold
        entry["total_cost"] += Decimal(str(purchase.total_cost))
        entry["purchases"].append(purchase)

    return {
        "date": day,
        "total_purchases": len(purchases),
        "total_spent": sum((Decimal(str(p.total_cost)) for p in purchases), Decimal("0.00")),
        "purchases_by_ingredient": list(by_ingredient.values()),
        "all_purchases": purchases,
    }


def get_purchase_dates(db: Session, limit: int = 30) -> list[dict]:
    """Most recent days with purchases, with their count and spend."""
    day = func.date(MarketPurchase.purchase_date)
    rows = (
        db.query(day.label("date"), func.count(MarketPurchase.id), func.sum(MarketPurchase.total_cost))
        .group_by(day)
        .order_by(day.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "date": str(date),
            "purchase_count": int(count),
            "total_spent": Decimal(str(total or 0)).quantize(Decimal("0.01")),
        }
        for date, count, total in rows
    ]


def reset_purchases_between(db: Session, first: dt.date, last: dt.date) -> int:
    deleted = (
        db.query(MarketPurchase)
        .filter(_between_days(MarketPurchase.purchase_date, first, last))
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)


def reset_purchases(db: Session) -> int:
    deleted = db.query(MarketPurchase).delete(synchronize_session=False)
    db.commit()
    return int(deleted or 0)


# -----------------------------
# Orders (shared with the kitchen)
# -----------------------------

def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def update_order_status(
    db: Session,
    order_id: int,
    new_status: str,
    *,
    event_type: Optional[str] = None,
    event_data: Optional[dict] = None,
) -> Optional[Order]:
    """Set the status and log an order event. Does not commit."""
    db_order = get_order(db, order_id)
    if not db_order:
        return None

    db_order.status = new_status
    db.add(OrderEvent(order_id=order_id, event_type=event_type or f"status_{new_status}", event_data=event_data or {}))
    db.flush()
    return db_order


def get_retries(db: Session) -> list[IngredientRetry]:
    return db.query(IngredientRetry).order_by(IngredientRetry.next_attempt_at, IngredientRetry.order_id).all()
