"""HTTP surface for RecipeFlow."""
