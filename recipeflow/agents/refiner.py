"""Recipe refinement agent configuration."""

import os

from pydantic_ai import Agent

from recipeflow.config import get_settings
from recipeflow.models.recipe import ExtractedRecipe

REFINER_SYSTEM_PROMPT = """
You are a recipe editor. You receive a draft recipe as JSON that was transcribed
automatically and may be messy.

Clean it up:
- Fix obvious transcription errors in names, quantities and units
- Normalise units to common abbreviations (tbsp, tsp, g, ml, cup)
- Split steps that combine unrelated actions and merge duplicate steps
- Assign a category to each ingredient (produce, dairy, meat, pantry, spice, other)
- Fill difficulty (easy, medium, hard) from the number and kind of steps

RULES:
- Do not add ingredients or steps that the draft does not imply
- Keep the title unless it is clearly garbled
- Return the whole recipe, not only the changed fields
"""


def create_refiner_agent() -> Agent[None, ExtractedRecipe]:
    """Create the refinement agent with proper configuration."""
    settings = get_settings()

    if settings.gemini_api_key:
        os.environ["GEMINI_API_KEY"] = settings.gemini_api_key
        os.environ["GOOGLE_API_KEY"] = settings.gemini_api_key

    return Agent(
        settings.refine_model,
        system_prompt=REFINER_SYSTEM_PROMPT,
        output_type=ExtractedRecipe,
        retries=2,
    )
