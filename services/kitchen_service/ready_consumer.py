from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Dict, Optional

from restaurant_common.database import SessionLocal
from restaurant_common.messages import INGREDIENT_READY_KEY, IngredientReady
from restaurant_common.messaging import start_consumer_in_thread
from restaurant_common.models import RESERVABLE_STATUSES, OrderStatus

from . import crud

logger = logging.getLogger(__name__)

INGREDIENT_READY_QUEUE = "kitchen.ingredient_ready"
COOKING_MS_PER_UNIT = int(os.getenv("COOKING_MS_PER_UNIT", "200"))


def cooking_seconds(ingredients: Dict[str, int], ms_per_unit: int = COOKING_MS_PER_UNIT) -> float:
    return sum(ingredients.values()) * ms_per_unit / 1000.0


def _start_cooking_timer(order_id: int, seconds: float) -> threading.Timer:
    timer = threading.Timer(seconds, complete_order, args=(order_id,))
    timer.daemon = True
    timer.start()
    return timer


def complete_order(order_id: int) -> bool:
    db = SessionLocal()
    try:
        order = crud.transition_order(
            db,
            order_id,
            OrderStatus.COMPLETED.value,
            allowed_from=[OrderStatus.PREPARING.value],
            event_type="order_completed",
        )
    except Exception:
        db.rollback()
        logger.exception("could not complete order. order_id=%s", order_id)
        return False
    finally:
        db.close()

    if order is None:
        logger.info("order was not preparing, nothing to complete. order_id=%s", order_id)
        return False
    logger.info("order completed. order_id=%s", order_id)
    return True


def handle_ingredient_ready(
    message: IngredientReady,
    *,
    start_timer: Callable[[int, float], Optional[threading.Timer]] = _start_cooking_timer,
) -> bool:
    """Start cooking an order whose ingredients the pantry reserved.

    Redeliveries for orders already cooking, completed or cancelled are
    ignored so the message can be acked.
    """
    if not isinstance(message, IngredientReady):
        raise TypeError(f"unexpected message kind on kitchen queue: {message.kind}")

    db = SessionLocal()
    try:
        order = crud.transition_order(
            db,
            message.order_id,
            OrderStatus.PREPARING.value,
            allowed_from=RESERVABLE_STATUSES,
            event_type="ingredients_ready",
            event_data={
                "requestId": message.request_id,
                "availableIngredients": dict(message.available_ingredients),
            },
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    if order is None:
        logger.info("ignoring ingredient_ready for order not awaiting ingredients. order_id=%s", message.order_id)
        return False

    seconds = cooking_seconds(message.available_ingredients)
    logger.info("cooking order %s for %.1fs", message.order_id, seconds)
    start_timer(message.order_id, seconds)
    return True


def resume_cooking(start_timer: Callable[[int, float], Optional[threading.Timer]] = _start_cooking_timer) -> int:
    """Restart timers for orders left cooking when the process went down."""
    db = SessionLocal()
    try:
        orders = crud.get_orders_with_status(db, OrderStatus.PREPARING.value)
        pending = [(o.id, cooking_seconds(o.required_ingredients)) for o in orders]
    finally:
        db.close()

    for order_id, seconds in pending:
        start_timer(order_id, seconds)
    return len(pending)


def start_ingredient_ready_consumer() -> threading.Thread:
    return start_consumer_in_thread(
        queue_name=INGREDIENT_READY_QUEUE,
        binding_keys=[INGREDIENT_READY_KEY],
        handler=handle_ingredient_ready,
    )
