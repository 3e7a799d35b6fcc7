from enum import Enum

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class OrderStatus(str, Enum):
    PENDING = "pending"
    WAITING_INGREDIENTS = "waiting_ingredients"
    PREPARING = "preparing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED.value, OrderStatus.CANCELLED.value})

# statuses from which the pantry may still reserve ingredients for an order
RESERVABLE_STATUSES = frozenset({OrderStatus.PENDING.value, OrderStatus.WAITING_INGREDIENTS.value})

# ingredients recipes may use; the pantry starts with some of each
INGREDIENTS = (
    "tomato",
    "lemon",
    "potato",
    "rice",
    "ketchup",
    "lettuce",
    "onion",
    "cheese",
    "meat",
    "chicken",
)


class Recipe(Base):
    __tablename__ = "recipes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True)
    ingredients = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    recipe_id = Column(Integer, ForeignKey("recipes.id"), nullable=True)
    required_ingredients = Column(JSON, nullable=False)
    status = Column(String(50), nullable=False, default=OrderStatus.PENDING.value, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    recipe = relationship("Recipe")
    events = relationship("OrderEvent", back_populates="order", order_by="OrderEvent.id")

    @property
    def recipe_name(self):
        return self.recipe.name if self.recipe else None


class OrderEvent(Base):
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="events")


class PantryStock(Base):
    __tablename__ = "pantry_stock"
    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_pantry_stock_quantity_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    ingredient = Column(String(100), nullable=False, unique=True, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class MarketPurchase(Base):
    """Append-only record of one non-empty answer from the farmers market."""

    __tablename__ = "market_purchases"

    id = Column(Integer, primary_key=True, index=True)
    ingredient = Column(String(100), nullable=False, index=True)
    quantity_requested = Column(Integer, nullable=False)
    quantity_sold = Column(Integer, nullable=False)
    price_per_unit = Column(Numeric(10, 2), nullable=False)
    total_cost = Column(Numeric(10, 2), nullable=False)
    purchase_date = Column(DateTime(timezone=True), server_default=func.now())


class IngredientRetry(Base):
    """Persisted retry progress for an order the pantry could not yet satisfy.

    `attempts` counts the retries scheduled so far. A NULL `next_attempt_at`
    means a worker claimed the row at `claimed_at` and the attempt is in
    flight. `reserved_ingredients` is set once the stock has been taken but
    the kitchen has not been told yet.
    """

    __tablename__ = "ingredient_retries"

    order_id = Column(Integer, ForeignKey("orders.id"), primary_key=True)
    request_id = Column(String(64), nullable=False)
    required_ingredients = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    reserved_ingredients = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
