import logging
import time

from fastapi import APIRouter, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from db import SessionDep
from dependencies import RecipeGeneratorDep
from models import Recipe
from recipe_ai import parse_recipe
from schemas import Pagination, RecipeGenerate, RecipeList, RecipeRead, page_window
from .auth import CurrentUserDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["recipes"])


@router.post("")
def generate_recipe(
    body: RecipeGenerate,
    session: SessionDep,
    current: CurrentUserDep,
    generator: RecipeGeneratorDep,
):
    """
    Ask the AI for a recipe built from leftover ingredients and save it
    to the caller's recipes when possible.
    """
    if not body.ingredients:
        raise HTTPException(status_code=400, detail="Ingredients are required")

    servings = body.number_of_people or 2
    text = generator.generate(
        body.ingredients,
        servings=servings,
        food_type=body.food_type,
        dietary_restrictions=body.dietary_restrictions,
    )
    recipe = parse_recipe(text, body.ingredients)

    saved = None
    try:
        saved = Recipe(
            user_id=current.id,
            title=recipe.title,
            description=recipe.description,
            ingredients=[ing.model_dump() for ing in recipe.ingredients],
            instructions=list(recipe.instructions),
            prep_time=recipe.prep_time,
            servings=servings,
            difficulty=recipe.difficulty,
            dietary_restrictions=list(body.dietary_restrictions),
            tips=recipe.tips,
        )
        session.add(saved)
        session.commit()
        session.refresh(saved)
    except SQLAlchemyError:
        session.rollback()
        saved = None
        logger.exception("Failed to save generated recipe for user %s", current.id)

    recipe_id = saved.id if saved is not None else f"temp_{int(time.time() * 1000)}"
    return {
        "message": "Recipe generated successfully",
        "recipe": {**recipe.model_dump(by_alias=True), "id": recipe_id},
        "saved": saved is not None,
    }


@router.get("", response_model=RecipeList)
def list_recipes(
    session: SessionDep,
    current: CurrentUserDep,
    limit: int = 10,
    offset: int = 0,
):
    """
    List the caller's saved recipes, newest first.
    """
    limit, offset = page_window(limit, offset)
    rows = session.exec(
        select(Recipe)
        .where(Recipe.user_id == current.id)
        .order_by(Recipe.created_at.desc(), Recipe.id.desc())
        .offset(offset)
        .limit(limit + 1)
    ).all()
    return RecipeList(
        recipes=[RecipeRead.model_validate(r) for r in rows[:limit]],
        pagination=Pagination(limit=limit, offset=offset, has_more=len(rows) > limit),
    )
