"""Recipe store: persistence for the recipes produced by completed jobs."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from recipeflow.models.recipe import Recipe
from recipeflow.utils.errors import DatabaseError

logger = logging.getLogger(__name__)


class RecipeStore(ABC):
    @abstractmethod
    async def create(self, recipe: Recipe) -> str:
        """Persist a recipe with its ingredients and steps; returns its id."""

    @abstractmethod
    async def get_by_id(self, recipe_id: str) -> Optional[Recipe]:
        ...


class InMemoryRecipeStore(RecipeStore):
    """Process-local recipe store used in development and tests."""

    def __init__(self) -> None:
        self._recipes: Dict[str, Recipe] = {}
        self._lock = threading.Lock()

    async def create(self, recipe: Recipe) -> str:
        with self._lock:
            self._recipes[recipe.id] = recipe.model_copy(deep=True)
        logger.info(
            f"Persisted recipe {recipe.id} with {len(recipe.ingredients)} ingredients "
            f"and {len(recipe.steps)} steps"
        )
        return recipe.id

    async def get_by_id(self, recipe_id: str) -> Optional[Recipe]:
        with self._lock:
            recipe = self._recipes.get(recipe_id)
            return recipe.model_copy(deep=True) if recipe else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._recipes)


class SupabaseRecipeStore(RecipeStore):
    """Recipe store backed by the Supabase ``recipes`` tables."""

    def __init__(self, supabase_client: Any) -> None:
        """
        Initialize the SupabaseRecipeStore.

        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    async def create(self, recipe: Recipe) -> str:
        """
        Store a recipe in Supabase.

        Args:
            recipe: Recipe to persist

        Returns:
            The id of the persisted recipe

        Raises:
            DatabaseError: If persistence fails
        """
        try:
            recipe_data = recipe.model_dump(
                mode="json", exclude={"ingredients", "steps"}
            )
            result = self.supabase.table("recipes").insert(recipe_data).execute()
            if not result.data:
                raise DatabaseError("Failed to insert recipe into database")

            if recipe.ingredients:
                rows = [
                    {**item.model_dump(mode="json"), "recipe_id": recipe.id}
                    for item in recipe.ingredients
                ]
                self.supabase.table("recipe_ingredients").insert(rows).execute()

            if recipe.steps:
                rows = [
                    {**step.model_dump(mode="json"), "recipe_id": recipe.id}
                    for step in recipe.steps
                ]
                self.supabase.table("recipe_steps").insert(rows).execute()

            logger.info(
                f"Persisted recipe {recipe.id} with {len(recipe.ingredients)} ingredients "
                f"and {len(recipe.steps)} steps"
            )
            return recipe.id

        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Failed to persist recipe: {e}")

    async def get_by_id(self, recipe_id: str) -> Optional[Recipe]:
        try:
            result = self.supabase.table("recipes").select("*").eq("id", recipe_id).execute()
            if not result.data:
                return None
            ingredients = (
                self.supabase.table("recipe_ingredients")
                .select("*")
                .eq("recipe_id", recipe_id)
                .order("sort_order")
                .execute()
            )
            steps = (
                self.supabase.table("recipe_steps")
                .select("*")
                .eq("recipe_id", recipe_id)
                .order("step_number")
                .execute()
            )
            return Recipe(
                **result.data[0],
                ingredients=ingredients.data or [],
                steps=steps.data or [],
            )
        except Exception as e:
            logger.error(f"Failed to get recipe {recipe_id}: {e}")
            return None


def create_recipe_store() -> RecipeStore:
    """Create the recipe store configured for this process."""
    from recipeflow.config import get_settings

    settings = get_settings()
    if not settings.use_supabase:
        return InMemoryRecipeStore()

    from supabase import create_client

    supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return SupabaseRecipeStore(supabase_client=supabase_client)
