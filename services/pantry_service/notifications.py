from __future__ import annotations

import datetime as dt
import logging

from restaurant_common.database import SessionLocal
from restaurant_common.messaging import publish_event
from restaurant_common.models import MarketPurchase

from . import crud

logger = logging.getLogger(__name__)

STOCK_UPDATED_KEY = "pantry.stock_updated"
MARKET_PURCHASE_KEY = "pantry.market_purchase"


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def notify_stock_changed() -> None:
    """Broadcast the current stock. Best-effort."""
    db = SessionLocal()
    try:
        stock = [{"ingredient": s.ingredient, "quantity": s.quantity} for s in crud.get_stock(db)]
        publish_event(
            STOCK_UPDATED_KEY,
            {"event": STOCK_UPDATED_KEY, "occurred_at": _now(), "stock": stock},
        )
    except Exception:
        logger.warning("could not publish stock update", exc_info=True)
    finally:
        db.close()


def notify_market_purchase(purchase: MarketPurchase) -> None:
    try:
        publish_event(
            MARKET_PURCHASE_KEY,
            {
                "event": MARKET_PURCHASE_KEY,
                "occurred_at": _now(),
                "ingredient": purchase.ingredient,
                "quantity_requested": purchase.quantity_requested,
                "quantity_sold": purchase.quantity_sold,
                "price_per_unit": str(purchase.price_per_unit),
                "total_cost": str(purchase.total_cost),
            },
        )
    except Exception:
        logger.warning("could not publish market purchase. ingredient=%s", purchase.ingredient, exc_info=True)
