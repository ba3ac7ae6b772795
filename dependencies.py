"""Process-wide collaborators handed to routes.

``main`` builds each of them once at import time and stores it on
``app.state``; tests swap them through ``app.dependency_overrides``.
"""
from typing import Annotated

from fastapi import Depends, Request

from lifecycle import LifecycleEngine
from recipe_ai import GeminiRecipeGenerator
from storage import CloudinaryImageStore


def get_lifecycle(request: Request) -> LifecycleEngine:
    return request.app.state.lifecycle


def get_image_store(request: Request) -> CloudinaryImageStore:
    return request.app.state.images


def get_recipe_generator(request: Request) -> GeminiRecipeGenerator:
    return request.app.state.recipe_generator


LifecycleDep = Annotated[LifecycleEngine, Depends(get_lifecycle)]
ImageStoreDep = Annotated[CloudinaryImageStore, Depends(get_image_store)]
RecipeGeneratorDep = Annotated[GeminiRecipeGenerator, Depends(get_recipe_generator)]
