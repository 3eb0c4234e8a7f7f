"""Best-effort refinement of extracted draft recipes."""

import logging
from typing import Optional

from pydantic_ai import Agent

from recipeflow.models.recipe import ExtractedRecipe
from recipeflow.services.cancellation import CancellationHandle
from recipeflow.utils.errors import JobCancelledError, RefinementError

logger = logging.getLogger(__name__)


class RecipeRefiner:
    """Runs the refinement agent over a draft."""

    def __init__(self, agent: Optional[Agent] = None) -> None:
        self._agent = agent

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            from recipeflow.agents.refiner import create_refiner_agent

            self._agent = create_refiner_agent()
        return self._agent

    async def refine(self, draft: ExtractedRecipe, handle: CancellationHandle) -> ExtractedRecipe:
        """
        Return an improved copy of ``draft``.

        Raises:
            RefinementError: If the agent fails or returns an unusable recipe
            JobCancelledError: If the handle fired during refinement
        """
        prompt = f"Draft recipe:\n{draft.model_dump_json(indent=2)}"
        try:
            result = await handle.run(self.agent.run(prompt))
        except JobCancelledError:
            raise
        except Exception as e:
            raise RefinementError(f"Recipe refinement failed: {e}") from e

        if not result or not result.output:
            raise RefinementError("Refiner returned no output")

        refined: ExtractedRecipe = result.output
        if not refined.title.strip() or not refined.ingredients:
            raise RefinementError("Refiner dropped the title or ingredients")
        if not refined.thumbnail_url:
            refined.thumbnail_url = draft.thumbnail_url
        return refined
