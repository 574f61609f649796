from enum import Enum
from pathlib import Path

from databases import Database

from domain.repository import (
    LocalRecipeRepository,
    LocalSettingsRepository,
    RecipeRepository,
    SettingsRepository,
    SqlRecipeRepository,
    SqlSettingsRepository,
)
from domain.store import CredentialStore, RecipeStore


class Backend(Enum):
    remote = "remote"
    local = "local"


class Repositories:
    def __init__(
        self,
        recipes: RecipeRepository,
        settings: SettingsRepository,
        database: Database | None = None,
    ) -> None:
        self.recipes = recipes
        self.settings = settings
        self.database = database


def build_repositories(
    backend: Backend,
    *,
    db_url: str,
    local_dir: Path,
    recipes_key: str = "granter.grantRecipes",
    settings_key: str = "granter.apiKeys",
) -> Repositories:
    match backend:
        case Backend.remote:
            database = Database(db_url)
            return Repositories(
                SqlRecipeRepository(database),
                SqlSettingsRepository(database),
                database=database,
            )
        case Backend.local:
            return Repositories(
                LocalRecipeRepository(local_dir, recipes_key),
                LocalSettingsRepository(local_dir, settings_key),
            )


async def open_recipe_store(
    repositories: Repositories, *, user_id: str | None
) -> RecipeStore:
    store = RecipeStore(repositories.recipes, user_id=user_id)
    await store.load()
    return store


def credential_store(
    repositories: Repositories, *, user_id: str | None
) -> CredentialStore:
    return CredentialStore(repositories.settings, user_id=user_id)
