from pydantic import BaseModel, Field, PositiveInt
from typing import Any, Dict, List, Optional
import datetime as dt
from datetime import datetime

from restaurant_common.models import OrderStatus


class RecipeOut(BaseModel):
    id: int
    name: str
    ingredients: Dict[str, int]
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RecipeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    ingredients: Dict[str, PositiveInt] = Field(..., min_length=1, description="Ingredient -> units per dish")


class RecipeDeleted(BaseModel):
    message: str
    deleted_recipe: RecipeOut


class IngredientsOut(BaseModel):
    ingredients: List[str]


class OrderCreate(BaseModel):
    bulk: int = Field(1, ge=1, le=100, description="How many orders to place")


class OrderCreateResponse(BaseModel):
    success: bool
    message: str
    order_ids: List[int]


class OrderOut(BaseModel):
    id: int
    recipe_id: Optional[int] = None
    required_ingredients: Dict[str, int]
    status: OrderStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class OrderEventOut(BaseModel):
    id: int
    order_id: int
    event_type: str
    event_data: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DailyOrderOut(OrderOut):
    recipe_name: Optional[str] = None


class DailyOrders(BaseModel):
    date: dt.date
    total_orders: int
    orders_by_status: Dict[str, int]
    orders: List[DailyOrderOut]


class OrderDate(BaseModel):
    date: dt.date
    order_count: int


class ResetRequest(BaseModel):
    confirm: str


class ResetResponse(BaseModel):
    message: str
    deleted: int
    timestamp: str


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
