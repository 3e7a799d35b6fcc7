from __future__ import annotations

import datetime as dt
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from restaurant_common.messages import IngredientRequest
from restaurant_common.models import IngredientRetry

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 5
RETRY_DELAYS = (30, 60, 120, 300, 600)  # seconds
RETRY_POLL_INTERVAL = float(os.getenv("RETRY_POLL_INTERVAL", "5"))
# longer than the slowest attempt: market backoff included
RETRY_CLAIM_LEASE = float(os.getenv("RETRY_CLAIM_LEASE", "900"))
# how soon an unsent ready notification is tried again
READY_RESEND_DELAY = float(os.getenv("READY_RESEND_DELAY", "5"))


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def retry_delay(attempts_made: int, delays: Sequence[int] = RETRY_DELAYS) -> int:
    """Seconds to wait before the retry that follows `attempts_made` retries."""
    if attempts_made < len(delays):
        return delays[attempts_made]
    return delays[-1]


@dataclass(frozen=True)
class RetryScheduled:
    order_id: int
    attempt: int
    delay_seconds: int
    next_attempt_at: dt.datetime


@dataclass(frozen=True)
class RetryExhausted:
    order_id: int
    attempts: int


RetryDecision = Union[RetryScheduled, RetryExhausted]


class RetryScheduler:
    """Backoff and cancellation policy for orders the pantry cannot fill yet.

    Progress lives in the `ingredient_retries` table next to the orders, so a
    restart picks up where it left off. A worker claims a due row by clearing
    its `next_attempt_at` under `SKIP LOCKED` and stamping `claimed_at`, which
    keeps a single attempt in flight per order. A claim older than
    `claim_lease` belongs to a worker that died and is handed out again.

    Once an attempt has reserved the stock the row is kept, with
    `reserved_ingredients` filled in, until the kitchen has been told.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        delays: Sequence[int] = RETRY_DELAYS,
        poll_interval: float = RETRY_POLL_INTERVAL,
        claim_lease: float = RETRY_CLAIM_LEASE,
        resend_delay: float = READY_RESEND_DELAY,
        batch_size: int = 10,
        clock: Callable[[], dt.datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.delays = tuple(delays)
        self.poll_interval = poll_interval
        self.claim_lease = claim_lease
        self.resend_delay = resend_delay
        self.batch_size = batch_size
        self._clock = clock
        self._stop = threading.Event()

    def _locked(self, db: Session, order_id: int) -> Optional[IngredientRetry]:
        return (
            db.query(IngredientRetry)
            .filter(IngredientRetry.order_id == order_id)
            .with_for_update()
            .first()
        )

    def get(self, db: Session, order_id: int) -> Optional[IngredientRetry]:
        return db.query(IngredientRetry).filter(IngredientRetry.order_id == order_id).first()

    def register_failure(self, db: Session, request: IngredientRequest) -> RetryDecision:
        """Book a failed attempt. Does not commit, so the caller can update the
        order status in the same transaction."""
        row = self._locked(db, request.order_id)
        made = row.attempts if row else 0

        if made >= self.max_attempts:
            if row is not None:
                db.delete(row)
                db.flush()
            return RetryExhausted(order_id=request.order_id, attempts=made)

        delay = retry_delay(made, self.delays)
        next_at = self._clock() + dt.timedelta(seconds=delay)
        if row is None:
            row = IngredientRetry(order_id=request.order_id)
            db.add(row)
        row.request_id = request.request_id
        row.required_ingredients = dict(request.required_ingredients)
        row.attempts = made + 1
        row.next_attempt_at = next_at
        row.claimed_at = None
        db.flush()
        return RetryScheduled(order_id=request.order_id, attempt=made + 1, delay_seconds=delay, next_attempt_at=next_at)

    def hold_notification(self, db: Session, request: IngredientRequest, reserved: Dict[str, int]) -> None:
        """Remember that the order's stock is taken until the kitchen hears of it.

        Does not commit. The row comes due after `resend_delay` in case the
        notification never goes out.
        """
        row = self._locked(db, request.order_id)
        if row is None:
            row = IngredientRetry(order_id=request.order_id, attempts=0)
            db.add(row)
        row.request_id = request.request_id
        row.required_ingredients = dict(request.required_ingredients)
        row.reserved_ingredients = dict(reserved)
        row.next_attempt_at = self._clock() + dt.timedelta(seconds=self.resend_delay)
        row.claimed_at = None
        db.flush()

    def reserved_for(self, db: Session, order_id: int) -> Optional[Dict[str, int]]:
        row = self.get(db, order_id)
        if row is None or row.reserved_ingredients is None:
            return None
        return dict(row.reserved_ingredients)

    def discard(self, db: Session, order_id: int) -> bool:
        deleted = db.query(IngredientRetry).filter(IngredientRetry.order_id == order_id).delete(synchronize_session=False)
        return bool(deleted)

    def claim_due(self, now: Optional[dt.datetime] = None) -> List[IngredientRequest]:
        now = now or self._clock()
        db = self._session_factory()
        try:
            rows = (
                db.query(IngredientRetry)
                .filter(IngredientRetry.next_attempt_at.isnot(None))
                .filter(IngredientRetry.next_attempt_at <= now)
                .order_by(IngredientRetry.next_attempt_at)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
                .all()
            )
            claimed = []
            for row in rows:
                row.next_attempt_at = None
                row.claimed_at = now
                claimed.append(
                    IngredientRequest(
                        request_id=row.request_id,
                        order_id=row.order_id,
                        required_ingredients=row.required_ingredients,
                    )
                )
            db.commit()
            return claimed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def release_stale_claims(self, now: Optional[dt.datetime] = None) -> int:
        """Make claims whose lease ran out due again."""
        now = now or self._clock()
        expired = now - dt.timedelta(seconds=self.claim_lease)
        db = self._session_factory()
        try:
            updated = (
                db.query(IngredientRetry)
                .filter(IngredientRetry.next_attempt_at.is_(None))
                .filter(or_(IngredientRetry.claimed_at.is_(None), IngredientRetry.claimed_at <= expired))
                .update(
                    {IngredientRetry.next_attempt_at: now, IngredientRetry.claimed_at: None},
                    synchronize_session=False,
                )
            )
            db.commit()
            return int(updated or 0)
        finally:
            db.close()

    def run_due(self, attempt: Callable[[IngredientRequest], None], now: Optional[dt.datetime] = None) -> int:
        requests_due = self.claim_due(now)
        for request in requests_due:
            logger.info("running retry. order_id=%s", request.order_id)
            try:
                attempt(request)
            except Exception:
                logger.exception("retry attempt failed. order_id=%s", request.order_id)
                self._rearm(request.order_id)
        return len(requests_due)

    def _rearm(self, order_id: int) -> None:
        db = self._session_factory()
        try:
            row = self._locked(db, order_id)
            if row is not None and row.next_attempt_at is None:
                row.next_attempt_at = self._clock() + dt.timedelta(seconds=retry_delay(row.attempts, self.delays))
                row.claimed_at = None
            db.commit()
        finally:
            db.close()

    def start_in_thread(self, attempt: Callable[[IngredientRequest], None], daemon: bool = True) -> threading.Thread:
        def _run() -> None:
            while not self._stop.is_set():
                try:
                    self.release_stale_claims()
                    self.run_due(attempt)
                except Exception:
                    logger.exception("retry poller iteration failed")
                self._stop.wait(self.poll_interval)

        t = threading.Thread(target=_run, name="retry-scheduler", daemon=daemon)
        t.start()
        return t

    def stop(self) -> None:
        self._stop.set()
