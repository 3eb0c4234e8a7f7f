"""Recipe extraction agent configuration.

The extractor reads a fetched source (video, page markdown or photos) and returns
a structured draft recipe.
"""

import os

from pydantic_ai import Agent

from recipeflow.config import get_settings
from recipeflow.models.recipe import ExtractedRecipe

EXTRACTOR_SYSTEM_PROMPT = """
You are a meticulous recipe transcriber. You receive one cooking source: a video,
the text of a recipe webpage, or photos of a recipe card or cookbook page.

Return the recipe exactly as the source gives it:
- title: the dish name
- description: one or two sentences, only if the source describes the dish
- servings, prep_time_minutes, cook_time_minutes when stated or clearly shown
- ingredients: every ingredient with quantity and unit kept as written; use
  section for groups such as "Sauce" or "Dough"; mark optional items
- steps: in order, one action per step, with duration_seconds and temperature
  when stated
- tags and cuisine only when obvious from the source

RULES:
- Never invent ingredients or steps that are not in the source
- If the source does not contain a recipe, return an empty title and no ingredients
- Keep ingredient names short ("olive oil", not "a drizzle of good olive oil")
"""


def create_extractor_agent() -> Agent[None, ExtractedRecipe]:
    """Create the extraction agent with proper configuration.

    Returns:
        A PydanticAI Agent that outputs an ExtractedRecipe.
    """
    settings = get_settings()

    # Set environment variables for pydantic-ai to pick up
    if settings.gemini_api_key:
        os.environ["GEMINI_API_KEY"] = settings.gemini_api_key
        os.environ["GOOGLE_API_KEY"] = settings.gemini_api_key

    return Agent(
        settings.extraction_model,
        system_prompt=EXTRACTOR_SYSTEM_PROMPT,
        output_type=ExtractedRecipe,
        retries=2,
    )
