from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from restaurant_common.database import SessionLocal
from restaurant_common.messages import INGREDIENT_REQUEST_KEY, IngredientReady, IngredientRequest
from restaurant_common.messaging import publish_message, start_consumer_in_thread
from restaurant_common.models import RESERVABLE_STATUSES, OrderStatus

from . import crud, notifications
from .market import MarketGateway
from .reservations import Insufficient, ReservationCoordinator, ReservationOutcome, Reserved
from .retry_scheduler import RetryExhausted, RetryScheduler

logger = logging.getLogger(__name__)

INGREDIENT_REQUEST_QUEUE = "pantry.ingredient_request"


class IngredientRequestHandler:
    """Turns an ingredient request into a reservation, a retry or a cancellation."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        coordinator: ReservationCoordinator,
        scheduler: RetryScheduler,
        publish: Callable = publish_message,
    ):
        self._session_factory = session_factory
        self.coordinator = coordinator
        self.scheduler = scheduler
        self._publish = publish

    def __call__(self, message) -> None:
        if not isinstance(message, IngredientRequest):
            raise TypeError(f"unexpected message kind on pantry queue: {message.kind}")
        self.handle(message)

    def handle_retry(self, request: IngredientRequest) -> None:
        self.handle(request, from_retry=True)

    def handle(self, request: IngredientRequest, *, from_retry: bool = False) -> Optional[ReservationOutcome]:
        logger.info(
            "ingredient request. order_id=%s request_id=%s ingredients=%s retry=%s",
            request.order_id, request.request_id, request.required_ingredients, from_retry,
        )
        if not self._should_attempt(request, from_retry):
            return None

        if from_retry:
            reserved = self._already_reserved(request.order_id)
            if reserved is not None:
                logger.info("stock already reserved, resending ready. order_id=%s", request.order_id)
                self._on_reserved(request, reserved)
                return reserved

        outcome = self.coordinator.reserve(
            request.order_id,
            request.required_ingredients,
            stage=lambda db, reserved: self.scheduler.hold_notification(db, request, reserved.consumed),
        )
        if isinstance(outcome, Reserved):
            self._on_reserved(request, outcome)
        else:
            self._on_insufficient(request, outcome)
        return outcome

    def _already_reserved(self, order_id: int) -> Optional[Reserved]:
        db = self._session_factory()
        try:
            consumed = self.scheduler.reserved_for(db, order_id)
        finally:
            db.close()
        if consumed is None:
            return None
        return Reserved(order_id=order_id, consumed=consumed)

    def _should_attempt(self, request: IngredientRequest, from_retry: bool) -> bool:
        db = self._session_factory()
        try:
            order = crud.get_order(db, request.order_id)
            if order is None:
                logger.warning("ingredient request for unknown order. order_id=%s", request.order_id)
                if self.scheduler.discard(db, request.order_id):
                    db.commit()
                return False

            if order.status not in RESERVABLE_STATUSES:
                logger.info("order no longer needs ingredients. order_id=%s status=%s", order.id, order.status)
                if self.scheduler.discard(db, order.id):
                    db.commit()
                return False

            # the scheduler owns orders it is retrying; a redelivered request must not race it
            if not from_retry and self.scheduler.get(db, order.id) is not None:
                logger.info("retry already scheduled, ignoring request. order_id=%s", order.id)
                return False
            return True
        finally:
            db.close()

    def _on_reserved(self, request: IngredientRequest, outcome: Reserved) -> None:
        # the held retry row re-sends this if publishing fails
        self._publish(
            IngredientReady(
                request_id=request.request_id,
                order_id=request.order_id,
                available_ingredients=outcome.consumed,
            )
        )
        logger.info("ingredients ready. order_id=%s", request.order_id)

        db = self._session_factory()
        try:
            self.scheduler.discard(db, request.order_id)
            db.commit()
        finally:
            db.close()

    def _on_insufficient(self, request: IngredientRequest, outcome: Insufficient) -> None:
        db = self._session_factory()
        try:
            decision = self.scheduler.register_failure(db, request)
            if isinstance(decision, RetryExhausted):
                crud.update_order_status(
                    db,
                    request.order_id,
                    OrderStatus.CANCELLED.value,
                    event_type="order_cancelled",
                    event_data={
                        "reason": "ingredients_unavailable",
                        "retries": decision.attempts,
                        "shortages": outcome.shortages,
                    },
                )
                logger.warning("retries exhausted, order cancelled. order_id=%s", request.order_id)
            else:
                crud.update_order_status(
                    db,
                    request.order_id,
                    OrderStatus.WAITING_INGREDIENTS.value,
                    event_type="retry_scheduled",
                    event_data={
                        "attempt": decision.attempt,
                        "max_attempts": self.scheduler.max_attempts,
                        "delay_seconds": decision.delay_seconds,
                        "reason": outcome.reason,
                        "shortages": outcome.shortages,
                    },
                )
                logger.info(
                    "retry %s/%s scheduled in %ss. order_id=%s",
                    decision.attempt, self.scheduler.max_attempts, decision.delay_seconds, request.order_id,
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


def build_handler() -> IngredientRequestHandler:
    coordinator = ReservationCoordinator(
        SessionLocal,
        MarketGateway(),
        on_stock_changed=notifications.notify_stock_changed,
        on_purchase=notifications.notify_market_purchase,
    )
    return IngredientRequestHandler(SessionLocal, coordinator, RetryScheduler(SessionLocal))


def start_ingredient_request_consumer(handler: IngredientRequestHandler) -> threading.Thread:
    return start_consumer_in_thread(
        queue_name=INGREDIENT_REQUEST_QUEUE,
        binding_keys=[INGREDIENT_REQUEST_KEY],
        handler=handler,
    )


def start_retry_scheduler(handler: IngredientRequestHandler) -> threading.Thread:
    released = handler.scheduler.release_stale_claims()
    if released:
        logger.info("re-armed %s retries left in flight by a previous run", released)
    return handler.scheduler.start_in_thread(handler.handle_retry)
