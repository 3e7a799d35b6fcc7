import datetime as dt

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from restaurant_common.database import get_db

from .. import crud
from ..notifications import notify_stock_changed
from ..schemas import (
    DailyPurchases,
    DateRangeResetRequest,
    DateRangeResetResponse,
    MarketPurchaseOut,
    PurchaseDate,
    ResetRequest,
    ResetResponse,
    RetryOut,
    StockOut,
    StockUpdate,
)

router = APIRouter(prefix="/pantry", tags=["Pantry Service"])

RESET_PURCHASES_TOKEN = "RESET_ALL_PURCHASES"
RESET_STOCK_TOKEN = "RESET_ALL_STOCK"
RESET_PURCHASES_RANGE_TOKEN = "DELETE_PURCHASES_DATE_RANGE"


def _timestamp() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z")


@router.get("/stock", response_model=list[StockOut])
def view_stock(db: Session = Depends(get_db)):
    return crud.get_stock(db)


@router.put("/stock/{ingredient}", response_model=StockOut)
def set_stock(ingredient: str, body: StockUpdate, db: Session = Depends(get_db)):
    name = ingredient.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Ingredient name is required")
    try:
        row = crud.set_quantity(db, name, body.quantity)
        db.commit()
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    db.refresh(row)
    notify_stock_changed()
    return row


@router.delete("/stock/reset", response_model=ResetResponse)
def reset_stock(body: ResetRequest, db: Session = Depends(get_db)):
    if body.confirm != RESET_STOCK_TOKEN:
        raise HTTPException(
            status_code=400,
            detail=f'Confirmation required. Send {{"confirm": "{RESET_STOCK_TOKEN}"}}',
        )
    deleted = crud.reset_stock(db)
    notify_stock_changed()
    return ResetResponse(message="Pantry stock deleted", deleted=deleted, timestamp=_timestamp())


@router.get("/market_purchases", response_model=list[MarketPurchaseOut])
def view_market_purchases(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return crud.get_purchases(db, skip=skip, limit=limit)


@router.get("/market_purchases/by-date/{day}", response_model=DailyPurchases)
def view_market_purchases_by_date(day: dt.date, db: Session = Depends(get_db)):
    """Purchases made on one day (UTC), with totals per ingredient."""
    return crud.summarize_purchases(day, crud.get_purchases_by_date(db, day))


@router.get("/market_purchases/available-dates", response_model=list[PurchaseDate])
def view_market_purchase_dates(db: Session = Depends(get_db)):
    """The last 30 days that saw purchases."""
    return crud.get_purchase_dates(db, limit=30)


@router.delete("/market_purchases/reset", response_model=ResetResponse)
def reset_market_purchases(body: ResetRequest, db: Session = Depends(get_db)):
    if body.confirm != RESET_PURCHASES_TOKEN:
        raise HTTPException(
            status_code=400,
            detail=f'Confirmation required. Send {{"confirm": "{RESET_PURCHASES_TOKEN}"}}',
        )
    deleted = crud.reset_purchases(db)
    return ResetResponse(message="Market purchases deleted", deleted=deleted, timestamp=_timestamp())


@router.delete("/market_purchases/reset/date-range", response_model=DateRangeResetResponse)
def reset_market_purchases_by_date_range(body: DateRangeResetRequest, db: Session = Depends(get_db)):
    if body.confirm != RESET_PURCHASES_RANGE_TOKEN:
        raise HTTPException(
            status_code=400,
            detail=f'Confirmation required. Send {{"confirm": "{RESET_PURCHASES_RANGE_TOKEN}"}}',
        )
    if body.start_date > body.end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    deleted = crud.reset_purchases_between(db, body.start_date, body.end_date)
    return DateRangeResetResponse(
        message=f"{deleted} market purchases deleted",
        start_date=body.start_date,
        end_date=body.end_date,
        deleted=deleted,
        timestamp=_timestamp(),
    )


@router.get("/retries", response_model=list[RetryOut])
def view_retries(db: Session = Depends(get_db)):
    """Orders waiting for another reservation attempt."""
    return crud.get_retries(db)
