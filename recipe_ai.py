import json
import logging
import re
from typing import List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError as SchemaError

from config import Settings
from errors import DependencyFailure
from schemas import RecipeContent, RecipeIngredient

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a professional chef and recipe creator. Create delicious, "
    "practical recipes using the given ingredients."
)

RECIPE_PROMPT = """Create a delicious recipe using these ingredients: {ingredients}

Requirements:
- Number of servings: {servings}
- Food type: {food_type}
- Dietary restrictions: {restrictions}

Please provide:
1. Recipe title
2. Brief description
3. List of ingredients with quantities
4. Step-by-step cooking instructions
5. Preparation time
6. Difficulty level (Easy/Medium/Hard)
7. Any additional tips or notes

IMPORTANT: Respond ONLY with valid JSON in this exact format (no additional text or markdown):
{{
  "title": "Recipe Title",
  "description": "Brief description",
  "ingredients": [{{"name": "ingredient", "quantity": "amount"}}],
  "instructions": ["step 1", "step 2", "step 3"],
  "prepTime": "time in minutes",
  "difficulty": "Easy",
  "tips": "Additional tips"
}}"""

JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def build_prompt(
    ingredients: List[RecipeIngredient],
    servings: int = 2,
    food_type: Optional[str] = None,
    dietary_restrictions: Optional[List[str]] = None,
) -> str:
    listed = ", ".join(f"{ing.name} ({ing.quantity})" for ing in ingredients)
    return RECIPE_PROMPT.format(
        ingredients=listed,
        servings=servings,
        food_type=food_type or "any",
        restrictions=", ".join(dietary_restrictions or []) or "none",
    )


def fallback_recipe(ingredients: List[RecipeIngredient]) -> RecipeContent:
    return RecipeContent(
        title="Generated Recipe",
        description="A delicious recipe using your ingredients",
        ingredients=ingredients,
        instructions=[
            "Follow the recipe instructions carefully",
            "Adjust seasoning to taste",
        ],
        prep_time="30 minutes",
        difficulty="Medium",
        tips="Feel free to adjust ingredients based on your preferences",
    )


def parse_recipe(text: str, ingredients: List[RecipeIngredient]) -> RecipeContent:
    """Pull the recipe object out of model output, or build one from the inputs.

    The model output is untrusted: it may wrap the JSON in prose or code
    fences, or not contain valid JSON at all.
    """
    match = JSON_OBJECT.search(text or "")
    candidate = match.group(0) if match else (text or "")
    try:
        return RecipeContent.model_validate(json.loads(candidate))
    except (json.JSONDecodeError, SchemaError) as exc:
        logger.warning("Could not parse recipe from AI response: %s", exc)
        logger.debug("Raw AI response: %r", text)
        return fallback_recipe(ingredients)


class GeminiRecipeGenerator:
    def __init__(self, settings: Settings):
        self.api_key = settings.gemini_api_key
        self.model_name = settings.gemini_model
        if self.api_key:
            genai.configure(api_key=self.api_key)
        else:
            logger.warning("GEMINI_API_KEY is not set; recipe generation will fail")

    def generate(
        self,
        ingredients: List[RecipeIngredient],
        servings: int = 2,
        food_type: Optional[str] = None,
        dietary_restrictions: Optional[List[str]] = None,
    ) -> str:
        """Return the raw recipe text produced by the model."""
        if not self.api_key:
            raise DependencyFailure(
                "AI service configuration error. Please contact support.",
                status_code=500,
            )

        prompt = build_prompt(ingredients, servings, food_type, dietary_restrictions)
        model = genai.GenerativeModel(self.model_name, system_instruction=SYSTEM_PROMPT)
        try:
            response = model.generate_content(prompt)
            return response.text
        except google_exceptions.ResourceExhausted as exc:
            logger.error("Gemini quota exceeded: %s", exc)
            raise DependencyFailure(
                "AI service quota exceeded. Please try again later.", status_code=429
            ) from exc
        except (google_exceptions.GoogleAPIError, ValueError) as exc:
            logger.error("Gemini API error: %s", exc)
            raise DependencyFailure(
                "AI service is currently unavailable. Please try again later.",
                status_code=503,
            ) from exc
