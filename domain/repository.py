from __future__ import annotations

from domain.errors import ErrorKind, StoreError
from domain.models import DEFAULT_PARTITION, Recipe, RecipeIngredient, utcnow
from domain.store import DocumentStore


RECIPES = "SELECT * FROM c WHERE c.type = 'Recipe' ORDER BY c.createdAt DESC"

INGREDIENTS = (
    "SELECT * FROM c WHERE c.type = 'RecipeIngredient' AND c.recipeId = @recipeId "
    "ORDER BY c.position"
)


class RecipesRepository:
    """Recipes and their ingredient items, stored as separate documents."""

    def __init__(
        self, store: DocumentStore, *, partition_key: str = DEFAULT_PARTITION
    ) -> None:
        self.store = store
        self.partition_key = partition_key

    async def add(
        self, recipe: Recipe, ingredients: list[RecipeIngredient] | None = None
    ) -> Recipe:
        recipe.pk = self.partition_key
        created = await self.store.create(recipe, self.partition_key)
        for ingredient in ingredients or []:
            ingredient.pk = self.partition_key
            await self.store.create(ingredient, self.partition_key)
        return created

    async def get(self, id: str) -> tuple[Recipe, list[RecipeIngredient]] | None:
        recipe = await self.store.get(id, self.partition_key)
        if not isinstance(recipe, Recipe):
            return None
        return recipe, await self.ingredients(id)

    async def ingredients(self, recipe_id: str) -> list[RecipeIngredient]:
        found = await self.store.query(INGREDIENTS, {"@recipeId": recipe_id})
        return [i for i in found if isinstance(i, RecipeIngredient)]

    async def list(self, *, tag: str | None = None) -> list[Recipe]:
        found = await self.store.query(RECIPES)
        recipes = [r for r in found if isinstance(r, Recipe)]
        if tag is None:
            return recipes
        tag = tag.strip().lower()
        # Tags are an array, which the query language cannot compare.
        return [r for r in recipes if tag in r.normalized_tags]

    async def update(self, recipe: Recipe) -> Recipe:
        recipe.pk = self.partition_key
        recipe.updated_at = utcnow()
        return await self.store.update(recipe, recipe.id, self.partition_key)

    async def replace_ingredients(
        self, recipe_id: str, ingredients: list[RecipeIngredient]
    ) -> list[RecipeIngredient]:
        for ingredient in ingredients:
            if ingredient.recipe_id != recipe_id:
                raise StoreError(
                    ErrorKind.PERMANENT,
                    f"Ingredient {ingredient.id!r} belongs to {ingredient.recipe_id!r}.",
                )
        for old in await self.ingredients(recipe_id):
            await self.store.delete(old.id, self.partition_key)
        for ingredient in ingredients:
            ingredient.pk = self.partition_key
            await self.store.create(ingredient, self.partition_key)
        return await self.ingredients(recipe_id)

    async def delete(self, id: str) -> None:
        for ingredient in await self.ingredients(id):
            await self.store.delete(ingredient.id, self.partition_key)
        await self.store.delete(id, self.partition_key)
