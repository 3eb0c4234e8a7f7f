"""Extraction service: fetched content to a structured draft recipe."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from pydantic_ai import Agent, BinaryContent, VideoUrl

from recipeflow.models.job import JobStatus
from recipeflow.models.recipe import ExtractedRecipe
from recipeflow.services.cancellation import CancellationHandle
from recipeflow.services.fetchers import FetchedContent
from recipeflow.utils.errors import ExtractionError, JobCancelledError, NoRecipeFoundError

logger = logging.getLogger(__name__)

# (percent in [0, 100], message, status)
ProgressCallback = Callable[[int, str, JobStatus], Awaitable[None]]

# Gemini rejects inline request payloads much above this.
DEFAULT_MAX_INLINE_BYTES = 20 * 1024 * 1024


async def _ignore_progress(percent: int, message: str, status: JobStatus) -> None:
    return None


class RecipeExtractor:
    """Runs the extraction agent over fetched content."""

    def __init__(
        self, agent: Optional[Agent] = None, max_inline_bytes: int = DEFAULT_MAX_INLINE_BYTES
    ) -> None:
        """
        Initialize the RecipeExtractor.

        Args:
            agent: Agent to use; created from settings on first use when omitted
            max_inline_bytes: Largest total size of local media sent with a request
        """
        self._agent = agent
        self.max_inline_bytes = max_inline_bytes

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            from recipeflow.agents.extractor import create_extractor_agent

            self._agent = create_extractor_agent()
        return self._agent

    async def extract(
        self,
        content: FetchedContent,
        handle: CancellationHandle,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ExtractedRecipe:
        """
        Extract a draft recipe from fetched content.

        Args:
            content: Output of the fetch stage
            handle: Cancellation handle for the job
            on_progress: Async callback receiving extractor progress in [0, 100]

        Returns:
            The extracted draft

        Raises:
            NoRecipeFoundError: If the source holds no usable recipe
            ExtractionError: If the agent call fails
            JobCancelledError: If the handle fired during extraction
        """
        report = on_progress or _ignore_progress
        await report(20, "Analyzing source", JobStatus.PROCESSING)
        prompt = await self._build_prompt(content)

        await report(40, "Extracting recipe", JobStatus.EXTRACTING)
        try:
            result = await handle.run(self.agent.run(prompt))
        except JobCancelledError:
            raise
        except Exception as e:
            raise ExtractionError(f"Recipe extraction failed: {e}") from e

        if not result or not result.output:
            raise ExtractionError("Extractor returned no output")

        draft: ExtractedRecipe = result.output
        if not draft.title.strip() or not any(i.name.strip() for i in draft.ingredients):
            raise NoRecipeFoundError("No recipe found in the source")
        if not draft.thumbnail_url and content.thumbnail_url:
            draft.thumbnail_url = content.thumbnail_url

        await report(90, "Recipe extracted", JobStatus.EXTRACTING)
        logger.info(
            f"Extracted '{draft.title}' for job {handle.job_id}: "
            f"{len(draft.ingredients)} ingredients, {len(draft.steps)} steps"
        )
        return draft

    async def _build_prompt(self, content: FetchedContent) -> List[Any]:
        header = [f"Source type: {content.kind.value}", f"Source: {content.locator}"]
        if content.title:
            header.append(f"Title: {content.title}")
        if content.description:
            header.append(f"Description: {content.description}")

        if content.text is not None:
            return ["\n".join(header) + "\n\n" + content.text]

        parts: List[Any] = ["\n".join(header)]
        if content.remote_url:
            parts.append(VideoUrl(url=content.remote_url))
            return parts

        files = content.files
        try:
            total = sum(path.stat().st_size for path, _ in files)
        except OSError as e:
            raise ExtractionError(f"Could not read fetched media: {e}") from e
        if total > self.max_inline_bytes:
            raise ExtractionError(
                f"Fetched media is {total} bytes, over the {self.max_inline_bytes} byte limit "
                "for media sent to the model"
            )

        for path, mime_type in files:
            try:
                data = await asyncio.to_thread(path.read_bytes)
            except OSError as e:
                raise ExtractionError(f"Could not read fetched file {path.name}: {e}") from e
            parts.append(BinaryContent(data=data, media_type=mime_type))
        return parts
