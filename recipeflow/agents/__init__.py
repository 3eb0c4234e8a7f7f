"""PydanticAI agent configurations for recipe extraction."""

from recipeflow.agents.extractor import EXTRACTOR_SYSTEM_PROMPT, create_extractor_agent
from recipeflow.agents.refiner import REFINER_SYSTEM_PROMPT, create_refiner_agent

__all__ = [
    "create_extractor_agent",
    "create_refiner_agent",
    "EXTRACTOR_SYSTEM_PROMPT",
    "REFINER_SYSTEM_PROMPT",
]
