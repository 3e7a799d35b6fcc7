import datetime as dt
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from restaurant_common.models import INGREDIENTS, IngredientRetry, Order, OrderEvent, OrderStatus, Recipe

DEFAULT_RECIPES = [
    ("Ensalada Mediterránea", {"tomato": 2, "lettuce": 1, "onion": 1, "cheese": 1}),
    ("Pollo al Limón", {"chicken": 2, "lemon": 1, "rice": 1}),
    ("Papas con Carne", {"potato": 3, "meat": 2, "onion": 1}),
    ("Arroz con Pollo y Tomate", {"rice": 2, "chicken": 1, "tomato": 1}),
    ("Tapa de Queso y Ketchup", {"cheese": 2, "ketchup": 1, "potato": 1}),
    ("Plato Criollo", {"meat": 1, "rice": 1, "lemon": 1, "onion": 1}),
]


def seed_recipes(db: Session) -> int:
    if db.query(Recipe).count():
        return 0
    for name, ingredients in DEFAULT_RECIPES:
        db.add(Recipe(name=name, ingredients=ingredients))
    db.commit()
    return len(DEFAULT_RECIPES)


def get_recipes(db: Session) -> List[Recipe]:
    return db.query(Recipe).order_by(Recipe.id).all()


def get_recipe(db: Session, recipe_id: int) -> Optional[Recipe]:
    return db.query(Recipe).filter(Recipe.id == recipe_id).first()


def pick_random_recipe(db: Session) -> Optional[Recipe]:
    return db.query(Recipe).order_by(func.random()).first()


def _check_recipe(name: str, ingredients: Dict[str, int]) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("name_required")
    if not ingredients:
        raise ValueError("ingredients_required")
    for ingredient, quantity in ingredients.items():
        if ingredient not in INGREDIENTS:
            raise ValueError(f"unknown_ingredient:{ingredient}")
        if int(quantity) <= 0:
            raise ValueError(f"invalid_quantity:{ingredient}")
    return name


def _name_taken(db: Session, name: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Recipe).filter(func.lower(Recipe.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(Recipe.id != exclude_id)
    return query.first() is not None


def create_recipe(db: Session, name: str, ingredients: Dict[str, int]) -> Recipe:
    name = _check_recipe(name, ingredients)
    if _name_taken(db, name):
        raise ValueError("duplicate_recipe_name")

    db_recipe = Recipe(name=name, ingredients=dict(ingredients))
    db.add(db_recipe)
    db.commit()
    db.refresh(db_recipe)
    return db_recipe


def update_recipe(db: Session, recipe_id: int, name: str, ingredients: Dict[str, int]) -> Optional[Recipe]:
    db_recipe = get_recipe(db, recipe_id)
    if not db_recipe:
        return None

    name = _check_recipe(name, ingredients)
    if _name_taken(db, name, exclude_id=recipe_id):
        raise ValueError("duplicate_recipe_name")

    db_recipe.name = name
    db_recipe.ingredients = dict(ingredients)
    db.commit()
    db.refresh(db_recipe)
    return db_recipe


def delete_recipe(db: Session, recipe_id: int) -> Optional[Recipe]:
    """Delete a recipe no order was ever placed for.

    Raises ValueError("recipe_in_use:<count>") otherwise.
    """
    db_recipe = get_recipe(db, recipe_id)
    if not db_recipe:
        return None

    in_use = db.query(Order).filter(Order.recipe_id == recipe_id).count()
    if in_use:
        raise ValueError(f"recipe_in_use:{in_use}")

    db.delete(db_recipe)
    db.commit()
    return db_recipe


def log_order_event(db: Session, order_id: int, event_type: str, event_data: Optional[dict] = None) -> OrderEvent:
    event = OrderEvent(order_id=order_id, event_type=event_type, event_data=event_data or {})
    db.add(event)
    return event


def create_order(db: Session, recipe: Recipe) -> Order:
    """Create a pending order holding a snapshot of the recipe's ingredients."""
    db_order = Order(
        recipe_id=recipe.id,
        required_ingredients=dict(recipe.ingredients),
        status=OrderStatus.PENDING.value,
    )
    db.add(db_order)
    db.flush()  # Get order ID without committing

    log_order_event(db, db_order.id, "order_created", {"recipe_name": recipe.name, "ingredients": recipe.ingredients})

    db.commit()
    db.refresh(db_order)
    return db_order


def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_orders(db: Session, skip: int = 0, limit: int = 100, status: Optional[str] = None) -> List[Order]:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).offset(skip).limit(limit).all()


def get_orders_with_status(db: Session, status: str) -> List[Order]:
    return db.query(Order).filter(Order.status == status).order_by(Order.id).all()


def get_order_events(db: Session, order_id: int) -> List[OrderEvent]:
    return db.query(OrderEvent).filter(OrderEvent.order_id == order_id).order_by(OrderEvent.id).all()


def _day_start(day: dt.date) -> dt.datetime:
    return dt.datetime.combine(day, dt.time.min, tzinfo=dt.timezone.utc)


def _created_between(first: dt.date, last: dt.date):
    return (Order.created_at >= _day_start(first)) & (Order.created_at < _day_start(last) + dt.timedelta(days=1))


def get_orders_by_date(db: Session, day: dt.date) -> List[Order]:
    return (
        db.query(Order)
        .options(joinedload(Order.recipe))
        .filter(_created_between(day, day))
        .order_by(Order.id.desc())
        .all()
    )


def get_order_dates(db: Session, limit: int = 30) -> List[Dict[str, object]]:
    day = func.date(Order.created_at)
    rows = (
        db.query(day.label("date"), func.count(Order.id))
        .group_by(day)
        .order_by(day.desc())
        .limit(limit)
        .all()
    )
    return [{"date": str(date), "order_count": int(count)} for date, count in rows]


def _delete_orders(db: Session, *criteria) -> int:
    order_ids = select(Order.id).where(*criteria)
    db.query(OrderEvent).filter(OrderEvent.order_id.in_(order_ids)).delete(synchronize_session=False)
    db.query(IngredientRetry).filter(IngredientRetry.order_id.in_(order_ids)).delete(synchronize_session=False)
    deleted = db.query(Order).filter(*criteria).delete(synchronize_session=False)
    db.commit()
    return int(deleted or 0)


def reset_orders(db: Session) -> int:
    """Delete every order together with its events and pending retries."""
    return _delete_orders(db)


def reset_orders_between(db: Session, first: dt.date, last: dt.date) -> int:
    return _delete_orders(db, _created_between(first, last))


def transition_order(
    db: Session,
    order_id: int,
    new_status: str,
    *,
    allowed_from: Iterable[str],
    event_type: str,
    event_data: Optional[dict] = None,
) -> Optional[Order]:
    """Move an order to `new_status` if it is currently in one of `allowed_from`.

    Returns the order when it moved, None otherwise.
    """
    db_order = (
        db.query(Order)
        .filter(Order.id == order_id)
        .with_for_update()
        .first()
    )
    if not db_order or db_order.status not in set(allowed_from):
        return None

    db_order.status = new_status
    log_order_event(db, order_id, event_type, event_data)
    db.commit()
    db.refresh(db_order)
    return db_order


def count_orders_by_status(db: Session) -> Dict[str, int]:
    counts = {s.value: 0 for s in OrderStatus}
    rows = db.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
    for status, count in rows:
        counts[status] = int(count)
    return counts
