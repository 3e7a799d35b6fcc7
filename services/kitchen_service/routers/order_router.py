import datetime as dt
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from restaurant_common.database import get_db
from restaurant_common.messages import IngredientRequest, new_request_id
from restaurant_common.messaging import publish_message
from restaurant_common.models import OrderStatus

from .. import crud, schemas

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orders",
    tags=["Kitchen Service"]
)

RESET_ORDERS_TOKEN = "RESET_ALL_DATA"
RESET_RANGE_TOKEN = "DELETE_DATE_RANGE"


def _timestamp() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


@router.post("/", response_model=schemas.OrderCreateResponse, status_code=status.HTTP_201_CREATED)
def create_orders(body: Optional[schemas.OrderCreate] = None, db: Session = Depends(get_db)):
    """Place `bulk` orders, each for a random recipe, and ask the pantry for their ingredients."""
    bulk = body.bulk if body else 1
    order_ids = []

    for _ in range(bulk):
        recipe = crud.pick_random_recipe(db)
        if recipe is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No recipes available")

        db_order = crud.create_order(db, recipe)
        order_ids.append(db_order.id)

        try:
            publish_message(
                IngredientRequest(
                    request_id=new_request_id(),
                    order_id=db_order.id,
                    required_ingredients=db_order.required_ingredients,
                )
            )
        except Exception:
            logger.exception("could not request ingredients. order_id=%s", db_order.id)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"error": "broker_unavailable", "order_ids": order_ids},
            )
        logger.info("ingredients requested. order_id=%s ingredients=%s", db_order.id, db_order.required_ingredients)

    return schemas.OrderCreateResponse(
        success=True,
        message=f"{bulk} order(s) created",
        order_ids=order_ids,
    )


@router.get("/", response_model=list[schemas.OrderOut])
def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    return crud.get_orders(db, skip=skip, limit=limit, status=order_status.value if order_status else None)


@router.get("/status-summary", response_model=dict[str, int])
def orders_status_summary(db: Session = Depends(get_db)):
    return crud.count_orders_by_status(db)


@router.get("/by-date/{day}", response_model=schemas.DailyOrders)
def orders_by_date(day: dt.date, db: Session = Depends(get_db)):
    """Orders placed on one day (UTC), newest first, with a count per status."""
    orders = crud.get_orders_by_date(db, day)
    by_status = {s.value: 0 for s in OrderStatus}
    for order in orders:
        by_status[order.status] = by_status.get(order.status, 0) + 1
    return schemas.DailyOrders(
        date=day,
        total_orders=len(orders),
        orders_by_status=by_status,
        orders=[schemas.DailyOrderOut.model_validate(o) for o in orders],
    )


@router.get("/available-dates", response_model=list[schemas.OrderDate])
def order_dates(db: Session = Depends(get_db)):
    """The last 30 days that saw orders."""
    return crud.get_order_dates(db, limit=30)


@router.delete("/reset", response_model=schemas.ResetResponse)
def reset_orders(body: schemas.ResetRequest, db: Session = Depends(get_db)):
    if body.confirm != RESET_ORDERS_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Confirmation required. Send {{"confirm": "{RESET_ORDERS_TOKEN}"}}',
        )
    deleted = crud.reset_orders(db)
    logger.warning("all orders deleted. count=%s", deleted)
    return schemas.ResetResponse(message="All orders deleted", deleted=deleted, timestamp=_timestamp())


@router.delete("/reset/date-range", response_model=schemas.DateRangeResetResponse)
def reset_orders_by_date_range(body: schemas.DateRangeResetRequest, db: Session = Depends(get_db)):
    if body.confirm != RESET_RANGE_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Confirmation required. Send {{"confirm": "{RESET_RANGE_TOKEN}"}}',
        )
    if body.start_date > body.end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date must not be after end_date")

    deleted = crud.reset_orders_between(db, body.start_date, body.end_date)
    logger.warning("orders deleted. start=%s end=%s count=%s", body.start_date, body.end_date, deleted)
    return schemas.DateRangeResetResponse(
        message=f"{deleted} orders deleted",
        start_date=body.start_date,
        end_date=body.end_date,
        deleted=deleted,
        timestamp=_timestamp(),
    )


@router.get("/{order_id}", response_model=schemas.OrderOut)
def get_order(order_id: int, db: Session = Depends(get_db)):
    db_order = crud.get_order(db, order_id)
    if not db_order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return db_order


@router.get("/{order_id}/events", response_model=list[schemas.OrderEventOut])
def get_order_events(order_id: int, db: Session = Depends(get_db)):
    if not crud.get_order(db, order_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return crud.get_order_events(db, order_id)
