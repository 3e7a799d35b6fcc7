from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional, Dict, List
import datetime as dt
from datetime import datetime


class StockOut(BaseModel):
    id: int
    ingredient: str
    quantity: int
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class StockUpdate(BaseModel):
    quantity: int = Field(..., ge=0, description="New quantity on hand")


class MarketPurchaseOut(BaseModel):
    id: int
    ingredient: str
    quantity_requested: int
    quantity_sold: int
    price_per_unit: Decimal
    total_cost: Decimal
    purchase_date: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RetryOut(BaseModel):
    order_id: int
    request_id: str
    required_ingredients: Dict[str, int]
    attempts: int
    next_attempt_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    reserved_ingredients: Optional[Dict[str, int]] = None

    model_config = {"from_attributes": True}


class ResetRequest(BaseModel):
    confirm: str


class ResetResponse(BaseModel):
    message: str
    deleted: int
    timestamp: str


class IngredientPurchases(BaseModel):
    ingredient: str
    total_quantity: int
    total_cost: Decimal
    purchases: List[MarketPurchaseOut]


class DailyPurchases(BaseModel):
    date: dt.date
    total_purchases: int
    total_spent: Decimal
    purchases_by_ingredient: List[IngredientPurchases]
    all_purchases: List[MarketPurchaseOut]


class PurchaseDate(BaseModel):
    date: dt.date
    purchase_count: int
    total_spent: Decimal


class DateRangeResetRequest(BaseModel):
    start_date: dt.date
    end_date: dt.date
    confirm: str


class DateRangeResetResponse(BaseModel):
    message: str
    start_date: dt.date
    end_date: dt.date
    deleted: int
    timestamp: str
