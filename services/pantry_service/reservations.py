from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from restaurant_common.models import MarketPurchase

from . import crud
from .market import MarketGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reserved:
    order_id: int
    consumed: Dict[str, int]


@dataclass(frozen=True)
class Insufficient:
    order_id: int
    # ingredient -> units still missing after buying
    shortages: Dict[str, int]
    reason: str = "insufficient_stock"


ReservationOutcome = Union[Reserved, Insufficient]


@dataclass
class _TopUp:
    purchases: List[MarketPurchase] = field(default_factory=list)
    stock_changed: bool = False


def _normalize(required: Mapping[str, int]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for ingredient, qty in required.items():
        name = (ingredient or "").strip()
        qty = int(qty)
        if not name:
            raise ValueError("ingredient_required")
        if qty <= 0:
            raise ValueError("quantity must be > 0")
        merged[name] = merged.get(name, 0) + qty
    return merged


class ReservationCoordinator:
    """All-or-nothing reservation of an order's ingredients.

    An attempt runs in two steps:

    1. Top up. For each short ingredient, in name order, lock its row, buy the
       shortfall from the market and commit the purchase records together with
       the units bought, added on top of whatever is stored by then. Purchases
       stay on the books whatever happens to the reservation.
    2. Reserve. In one transaction lock every required row in name order,
       re-check the quantities and either decrement all of them and commit, or
       roll back without touching anything.

    Taking locks in a stable order keeps two orders that share ingredients
    from deadlocking.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: MarketGateway,
        *,
        on_stock_changed: Callable[[], None] = lambda: None,
        on_purchase: Callable[[MarketPurchase], None] = lambda purchase: None,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._on_stock_changed = on_stock_changed
        self._on_purchase = on_purchase

    def reserve(
        self,
        order_id: int,
        required_ingredients: Mapping[str, int],
        *,
        stage: Optional[Callable[[Session, Reserved], None]] = None,
    ) -> ReservationOutcome:
        """Reserve everything or nothing.

        `stage` runs inside the reserving transaction just before it commits,
        so whatever it writes lands together with the stock decrement.
        """
        required = _normalize(required_ingredients)

        try:
            for ingredient in sorted(required):
                top_up = self._top_up(ingredient, required[ingredient])
                for purchase in top_up.purchases:
                    self._on_purchase(purchase)
                if top_up.stock_changed:
                    self._on_stock_changed()

            outcome = self._reserve_all(order_id, required, stage)
        except SQLAlchemyError:
            logger.exception("reservation transaction failed. order_id=%s", order_id)
            return Insufficient(order_id=order_id, shortages=dict(required), reason="transaction_failed")

        if isinstance(outcome, Reserved):
            logger.info("reserved ingredients. order_id=%s consumed=%s", order_id, outcome.consumed)
            self._on_stock_changed()
        else:
            logger.info("insufficient ingredients. order_id=%s shortages=%s", order_id, outcome.shortages)
        return outcome

    def _top_up(self, ingredient: str, required_qty: int) -> _TopUp:
        db = self._session_factory()
        try:
            if crud.lock_and_read(db, ingredient) >= required_qty:
                db.rollback()
                return _TopUp()

            # a row to lock even for an ingredient the pantry never had
            crud.ensure_row(db, ingredient)
            db.commit()
            current = crud.lock_and_read(db, ingredient)
            if current >= required_qty:
                db.rollback()
                return _TopUp()

            shortfall = required_qty - current
            logger.info("short on %s. have=%s need=%s buying=%s", ingredient, current, required_qty, shortfall)
            result = self._gateway.purchase(db, ingredient, shortfall)
            if result.quantity_obtained:
                crud.increment(db, ingredient, result.quantity_obtained)
            db.commit()
            for purchase in result.purchases:
                db.refresh(purchase)
            return _TopUp(purchases=list(result.purchases), stock_changed=result.quantity_obtained > 0)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _reserve_all(
        self,
        order_id: int,
        required: Dict[str, int],
        stage: Optional[Callable[[Session, Reserved], None]] = None,
    ) -> ReservationOutcome:
        db = self._session_factory()
        try:
            available = {ingredient: crud.lock_and_read(db, ingredient) for ingredient in sorted(required)}
            shortages = {
                ingredient: qty - available[ingredient]
                for ingredient, qty in required.items()
                if available[ingredient] < qty
            }
            if shortages:
                db.rollback()
                return Insufficient(order_id=order_id, shortages=shortages)

            try:
                for ingredient in sorted(required):
                    crud.decrement(db, ingredient, required[ingredient])
            except ValueError as e:
                # another writer took the units between the read and the update
                db.rollback()
                _, ingredient = str(e).split(":", 1)
                return Insufficient(order_id=order_id, shortages={ingredient: required[ingredient]})

            outcome = Reserved(order_id=order_id, consumed=dict(required))
            if stage is not None:
                stage(db, outcome)
            db.commit()
            return outcome
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
