"""
Client for the farmers market the pantry buys missing ingredients from.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional

import requests
from dotenv import load_dotenv
from sqlalchemy.orm import Session

from restaurant_common.models import MarketPurchase

from . import crud

load_dotenv()

logger = logging.getLogger(__name__)

MARKET_URL = os.getenv("MARKET_URL", "https://recruitment.alegra.com/api/farmers-market/buy")
MARKET_TIMEOUT = float(os.getenv("MARKET_TIMEOUT", "10"))
# 0 keeps buying until the shortfall is covered
MARKET_MAX_ATTEMPTS = int(os.getenv("MARKET_MAX_ATTEMPTS", "10"))
MARKET_BACKOFF_FLOOR = float(os.getenv("MARKET_BACKOFF_FLOOR", "1"))
MARKET_BACKOFF_CEILING = float(os.getenv("MARKET_BACKOFF_CEILING", "60"))

DEFAULT_PRICE = Decimal("2.00")

# The market does not quote prices, so purchases are booked at these.
INGREDIENT_PRICES = {
    "potato": Decimal("1.50"),
    "tomato": Decimal("2.00"),
    "cheese": Decimal("4.50"),
    "meat": Decimal("8.00"),
    "rice": Decimal("1.20"),
    "lemon": Decimal("0.80"),
    "onion": Decimal("1.00"),
    "garlic": Decimal("3.00"),
    "pepper": Decimal("2.50"),
    "salt": Decimal("0.50"),
    "oil": Decimal("3.50"),
    "bread": Decimal("2.20"),
}


def price_for(ingredient: str) -> Decimal:
    return INGREDIENT_PRICES.get(ingredient.lower(), DEFAULT_PRICE)


@dataclass
class PurchaseResult:
    ingredient: str
    quantity_needed: int
    quantity_obtained: int = 0
    attempts: int = 0
    purchases: List[MarketPurchase] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return self.quantity_obtained >= self.quantity_needed


class MarketGateway:
    def __init__(
        self,
        *,
        url: str = MARKET_URL,
        timeout: float = MARKET_TIMEOUT,
        max_attempts: Optional[int] = MARKET_MAX_ATTEMPTS,
        backoff_floor: float = MARKET_BACKOFF_FLOOR,
        backoff_ceiling: float = MARKET_BACKOFF_CEILING,
        http=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.timeout = timeout
        self.max_attempts = max_attempts or None
        self.backoff_floor = backoff_floor
        self.backoff_ceiling = backoff_ceiling
        self._http = http or requests
        self._sleep = sleep

    def _out_of_attempts(self, result: PurchaseResult) -> bool:
        return self.max_attempts is not None and result.attempts >= self.max_attempts

    def buy_once(self, ingredient: str) -> int:
        """One call to the market. Returns how many units it sold us."""
        resp = self._http.get(self.url, params={"ingredient": ingredient}, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        sold = int(data["quantitySold"])
        if sold < 0:
            raise ValueError(f"negative_quantity_sold:{sold}")
        return sold

    def purchase(self, db: Session, ingredient: str, needed_quantity: int) -> PurchaseResult:
        """Keep buying until `needed_quantity` units are obtained.

        Every non-empty answer is recorded as a MarketPurchase in `db` (the
        caller commits) and resets the backoff; empty answers and errors double
        it up to the ceiling. With `max_attempts` set the loop gives up after
        that many calls and the result is partial.
        """
        result = PurchaseResult(ingredient=ingredient, quantity_needed=needed_quantity)
        delay = self.backoff_floor

        while result.quantity_obtained < needed_quantity:
            if self._out_of_attempts(result):
                logger.warning(
                    "market gave up. ingredient=%s obtained=%s needed=%s attempts=%s",
                    ingredient, result.quantity_obtained, needed_quantity, result.attempts,
                )
                break

            remaining = needed_quantity - result.quantity_obtained
            result.attempts += 1
            try:
                sold = self.buy_once(ingredient)
            except (requests.RequestException, ValueError, KeyError, TypeError) as e:
                logger.warning("market call failed. ingredient=%s attempt=%s error=%s", ingredient, result.attempts, e)
                sold = 0

            if sold > 0:
                purchase = crud.record_purchase(
                    db,
                    ingredient=ingredient,
                    quantity_requested=remaining,
                    quantity_sold=sold,
                    price_per_unit=price_for(ingredient),
                )
                result.purchases.append(purchase)
                result.quantity_obtained += sold
                delay = self.backoff_floor
                logger.info(
                    "bought %s %s at %s each (%s/%s)",
                    sold, ingredient, purchase.price_per_unit, result.quantity_obtained, needed_quantity,
                )
            else:
                logger.info("market had no %s. attempt=%s", ingredient, result.attempts)

            if result.quantity_obtained < needed_quantity and not self._out_of_attempts(result):
                self._sleep(delay)
                delay = min(delay * 2, self.backoff_ceiling)

        return result
