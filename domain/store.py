"""Recipe Store: the current user's recipe collection.

The in-memory collection is only changed after the backing medium has
accepted the write, so a failed write leaves the cache as it was.
Callers get copies, never the cached objects.
"""

from datetime import datetime
import logging
from typing import Any, Callable, Mapping

from domain.errors import NotAuthenticated
from domain.models import (
    ApiKeys,
    GrantRecipe,
    build_recipe,
    compute_token_count,
    format_timestamp,
    new_id,
    normalize_updates,
    sortable_timestamp,
)
from domain.repository import RecipeRepository, SettingsRepository


logger = logging.getLogger(__name__)


Clock = Callable[[], datetime]


class RecipeStore:
    def __init__(
        self,
        repository: RecipeRepository,
        *,
        user_id: str | None = None,
        clock: Clock = datetime.now,
    ) -> None:
        self.repository = repository
        self.user_id = user_id
        self.clock = clock
        self.loaded = False
        self._recipes: list[GrantRecipe] = []

    @property
    def can_write(self) -> bool:
        return self.user_id is not None or not self.repository.requires_user

    def _ensure_user(self) -> None:
        if not self.can_write:
            raise NotAuthenticated()

    async def load(self) -> None:
        """Replace the cached collection with the backing medium's."""
        if not self.can_write:
            self._recipes = []
            self.loaded = True
            return
        recipes = await self.repository.list(self.user_id)
        logger.info("Loaded %s recipes for user %s", len(recipes), self.user_id)
        self._recipes = recipes
        self.loaded = True

    def list(self) -> list[GrantRecipe]:
        """Most recently updated first."""
        ordered = sorted(
            self._recipes,
            key=lambda r: sortable_timestamp(r.updated_at),
            reverse=True,
        )
        return [r.model_copy(deep=True) for r in ordered]

    def get(self, recipe_id: str) -> GrantRecipe | None:
        for recipe in self._recipes:
            if recipe.id == recipe_id:
                return recipe.model_copy(deep=True)
        return None

    def _stamp(self, data: dict[str, Any]) -> GrantRecipe:
        data["token_count"] = compute_token_count(data.get("prompt"))
        data["updated_at"] = format_timestamp(self.clock())
        return build_recipe(data)

    async def create(self, partial: GrantRecipe | Mapping[str, Any]) -> GrantRecipe:
        self._ensure_user()
        if isinstance(partial, GrantRecipe):
            data = partial.model_dump()
        else:
            data = normalize_updates(partial)
        if not data.get("id"):
            data["id"] = new_id()
        recipe = self._stamp(data)

        await self.repository.upsert(self.user_id, recipe)
        logger.info("Created recipe %s", recipe.id)

        self._recipes = [recipe] + [r for r in self._recipes if r.id != recipe.id]
        return recipe.model_copy(deep=True)

    async def update(
        self, recipe_id: str, updates: GrantRecipe | Mapping[str, Any]
    ) -> GrantRecipe | None:
        self._ensure_user()
        existing = next((r for r in self._recipes if r.id == recipe_id), None)
        if existing is None:
            return None

        if isinstance(updates, GrantRecipe):
            changes = updates.model_dump()
        else:
            changes = normalize_updates(updates)
        changes.pop("id", None)
        data = existing.model_dump()
        data.update(changes)
        recipe = self._stamp(data)

        await self.repository.upsert(self.user_id, recipe)
        logger.info("Updated recipe %s", recipe.id)

        self._recipes = [recipe] + [r for r in self._recipes if r.id != recipe_id]
        return recipe.model_copy(deep=True)

    async def delete(self, recipe_id: str) -> None:
        self._ensure_user()
        await self.repository.delete(self.user_id, recipe_id)
        logger.info("Deleted recipe %s", recipe_id)
        self._recipes = [r for r in self._recipes if r.id != recipe_id]


class CredentialStore:
    """Per-user provider API keys."""

    def __init__(self, repository: SettingsRepository, *, user_id: str | None = None):
        self.repository = repository
        self.user_id = user_id

    @property
    def can_write(self) -> bool:
        return self.user_id is not None or not self.repository.requires_user

    async def load(self) -> ApiKeys:
        if not self.can_write:
            return ApiKeys()
        keys = await self.repository.get_api_keys(self.user_id)
        return ApiKeys() if keys is None else keys

    async def save(self, update: ApiKeys | Mapping[str, Any]) -> ApiKeys:
        if not self.can_write:
            raise NotAuthenticated("You must be signed in to save settings.")
        if not isinstance(update, ApiKeys):
            update = ApiKeys.model_validate(update)
        current = await self.load()
        keys = current.model_copy(update=update.model_dump(exclude_unset=True))
        await self.repository.save_api_keys(self.user_id, keys)
        return keys
