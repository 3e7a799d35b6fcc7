from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from restaurant_common.database import get_db
from restaurant_common.models import INGREDIENTS

from .. import crud
from ..schemas import IngredientsOut, RecipeDeleted, RecipeIn, RecipeOut

router = APIRouter(prefix="/recipes", tags=["Kitchen Service"])
ingredients_router = APIRouter(prefix="/ingredients", tags=["Kitchen Service"])


def _recipe_error(e: ValueError) -> HTTPException:
    msg = str(e)
    if msg == "duplicate_recipe_name":
        return HTTPException(status_code=409, detail="Recipe name already exists")
    if msg == "name_required":
        return HTTPException(status_code=400, detail="Recipe name is required")
    if msg.startswith("unknown_ingredient:"):
        _, ingredient = msg.split(":", 1)
        return HTTPException(
            status_code=400,
            detail={"error": "unknown_ingredient", "ingredient": ingredient, "available": list(INGREDIENTS)},
        )
    return HTTPException(status_code=400, detail=msg)


@router.get("/", response_model=list[RecipeOut])
def list_recipes(db: Session = Depends(get_db)):
    return crud.get_recipes(db)


@router.get("/{recipe_id}", response_model=RecipeOut)
def get_recipe(recipe_id: int, db: Session = Depends(get_db)):
    recipe = crud.get_recipe(db, recipe_id)
    if not recipe:
        raise HTTPException(status_code=404, detail="Recipe not found")
    return recipe


@router.post("/", response_model=RecipeOut, status_code=201)
def create_recipe(body: RecipeIn, db: Session = Depends(get_db)):
    try:
        return crud.create_recipe(db, body.name, body.ingredients)
    except ValueError as e:
        raise _recipe_error(e)
    except IntegrityError:
        # unique constraint hit by a concurrent create
        db.rollback()
        raise HTTPException(status_code=409, detail="Recipe name already exists")


@router.put("/{recipe_id}", response_model=RecipeOut)
def update_recipe(recipe_id: int, body: RecipeIn, db: Session = Depends(get_db)):
    try:
        recipe = crud.update_recipe(db, recipe_id, body.name, body.ingredients)
    except ValueError as e:
        raise _recipe_error(e)
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Recipe name already exists")
    if not recipe:
        raise HTTPException(status_code=404, detail="Recipe not found")
    return recipe


@router.delete("/{recipe_id}", response_model=RecipeDeleted)
def delete_recipe(recipe_id: int, db: Session = Depends(get_db)):
    recipe = crud.get_recipe(db, recipe_id)
    if not recipe:
        raise HTTPException(status_code=404, detail="Recipe not found")
    deleted = RecipeOut.model_validate(recipe)

    try:
        crud.delete_recipe(db, recipe_id)
    except ValueError as e:
        _, count = str(e).split(":", 1)
        raise HTTPException(
            status_code=409,
            detail={"error": "recipe_in_use", "orders_count": int(count)},
        )
    return RecipeDeleted(message="Recipe deleted", deleted_recipe=deleted)


@ingredients_router.get("/", response_model=IngredientsOut)
def list_ingredients():
    """Ingredients a recipe may use."""
    return IngredientsOut(ingredients=list(INGREDIENTS))
