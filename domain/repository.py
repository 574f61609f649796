"""Backing media for recipes and user settings.

Two interchangeable families. The SQL one is the remote document store:
every row is a JSON document keyed by `(user_id, id)`. The local one keeps
the whole collection under a single storage key in a JSON file and ignores
the user.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from databases import Database

from domain.models import ApiKeys, GrantRecipe, build_recipe, sortable_timestamp


logger = logging.getLogger(__name__)


CREATE_RECIPES_TABLE = """
CREATE TABLE IF NOT EXISTS recipes (
    user_id VARCHAR(128) NOT NULL,
    id VARCHAR(64) NOT NULL,
    document TEXT NOT NULL,
    updated_at VARCHAR(32) NOT NULL,
    PRIMARY KEY (user_id, id)
)
"""


CREATE_SETTINGS_TABLE = """
CREATE TABLE IF NOT EXISTS settings (
    user_id VARCHAR(128) NOT NULL,
    name VARCHAR(64) NOT NULL,
    document TEXT NOT NULL,
    PRIMARY KEY (user_id, name)
)
"""


UPSERT_RECIPE = """
INSERT INTO recipes(user_id, id, document, updated_at)
VALUES (:user_id, :id, :document, :updated_at)
ON CONFLICT(user_id, id) DO UPDATE
SET document = excluded.document, updated_at = excluded.updated_at
"""


GET_RECIPE = "SELECT document FROM recipes WHERE user_id = :user_id AND id = :id"


LIST_RECIPES = (
    "SELECT document FROM recipes WHERE user_id = :user_id ORDER BY updated_at DESC"
)


DELETE_RECIPE = "DELETE FROM recipes WHERE user_id = :user_id AND id = :id"


UPSERT_SETTINGS = """
INSERT INTO settings(user_id, name, document) VALUES (:user_id, :name, :document)
ON CONFLICT(user_id, name) DO UPDATE SET document = excluded.document
"""


GET_SETTINGS = "SELECT document FROM settings WHERE user_id = :user_id AND name = :name"


API_KEYS_SETTINGS = "apiKeys"


class RecipeRepository(Protocol):
    requires_user: bool

    async def list(self, user_id: str | None) -> list[GrantRecipe]:
        ...

    async def get(self, user_id: str | None, recipe_id: str) -> GrantRecipe | None:
        ...

    async def upsert(self, user_id: str | None, recipe: GrantRecipe) -> None:
        ...

    async def delete(self, user_id: str | None, recipe_id: str) -> None:
        ...


class SettingsRepository(Protocol):
    requires_user: bool

    async def get_api_keys(self, user_id: str | None) -> ApiKeys | None:
        ...

    async def save_api_keys(self, user_id: str | None, keys: ApiKeys) -> None:
        ...


async def create_tables(db: Database) -> None:
    await db.execute(query=CREATE_RECIPES_TABLE)  # pyright: ignore[reportUnknownMemberType]
    await db.execute(query=CREATE_SETTINGS_TABLE)  # pyright: ignore[reportUnknownMemberType]


class SqlRecipeRepository:
    requires_user = True

    def __init__(self, db: Database) -> None:
        self.db = db

    async def list(self, user_id: str | None) -> list[GrantRecipe]:
        rows = await self.db.fetch_all(  # pyright: ignore[reportUnknownMemberType]
            LIST_RECIPES, values={"user_id": user_id}
        )
        return [build_recipe(json.loads(r["document"])) for r in rows]

    async def get(self, user_id: str | None, recipe_id: str) -> GrantRecipe | None:
        row = await self.db.fetch_one(  # pyright: ignore[reportUnknownMemberType]
            GET_RECIPE, values={"user_id": user_id, "id": recipe_id}
        )
        if row is None:
            return None
        return build_recipe(json.loads(row["document"]))

    async def upsert(self, user_id: str | None, recipe: GrantRecipe) -> None:
        await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
            UPSERT_RECIPE,
            values={
                "user_id": user_id,
                "id": recipe.id,
                "document": json.dumps(recipe.to_dict()),
                "updated_at": sortable_timestamp(recipe.updated_at),
            },
        )

    async def delete(self, user_id: str | None, recipe_id: str) -> None:
        await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
            DELETE_RECIPE, values={"user_id": user_id, "id": recipe_id}
        )


class SqlSettingsRepository:
    requires_user = True

    def __init__(self, db: Database) -> None:
        self.db = db

    async def get_api_keys(self, user_id: str | None) -> ApiKeys | None:
        row = await self.db.fetch_one(  # pyright: ignore[reportUnknownMemberType]
            GET_SETTINGS, values={"user_id": user_id, "name": API_KEYS_SETTINGS}
        )
        if row is None:
            return None
        return ApiKeys.model_validate(json.loads(row["document"]))

    async def save_api_keys(self, user_id: str | None, keys: ApiKeys) -> None:
        await self.db.execute(  # pyright: ignore[reportUnknownMemberType]
            UPSERT_SETTINGS,
            values={
                "user_id": user_id,
                "name": API_KEYS_SETTINGS,
                "document": json.dumps(keys.to_dict()),
            },
        )


class JsonFile:
    """A single storage key persisted as a JSON file."""

    def __init__(self, directory: Path, key: str) -> None:
        self.path = directory / f"{key}.json"

    def _read(self) -> Any:
        if not self.path.exists():
            return None
        with open(self.path) as f:
            return json.load(f)

    def _write(self, data: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self.path)

    async def read(self) -> Any:
        return await asyncio.to_thread(self._read)

    async def write(self, data: Any) -> None:
        await asyncio.to_thread(self._write, data)


class LocalRecipeRepository:
    requires_user = False

    def __init__(self, directory: Path, key: str = "granter.grantRecipes") -> None:
        self.file = JsonFile(directory, key)

    async def _load(self) -> list[dict[str, Any]]:
        data = await self.file.read()
        if data is None:
            return []
        if not isinstance(data, list):
            logger.warning("Ignoring malformed recipe storage at %s", self.file.path)
            return []
        return data

    async def list(self, user_id: str | None) -> list[GrantRecipe]:
        return [build_recipe(d) for d in await self._load()]

    async def get(self, user_id: str | None, recipe_id: str) -> GrantRecipe | None:
        for recipe in await self.list(user_id):
            if recipe.id == recipe_id:
                return recipe
        return None

    async def upsert(self, user_id: str | None, recipe: GrantRecipe) -> None:
        data = [d for d in await self._load() if d.get("id") != recipe.id]
        await self.file.write([recipe.to_dict()] + data)

    async def delete(self, user_id: str | None, recipe_id: str) -> None:
        data = await self._load()
        kept = [d for d in data if d.get("id") != recipe_id]
        if len(kept) != len(data):
            await self.file.write(kept)


class LocalSettingsRepository:
    requires_user = False

    def __init__(self, directory: Path, key: str = "granter.apiKeys") -> None:
        self.file = JsonFile(directory, key)

    async def get_api_keys(self, user_id: str | None) -> ApiKeys | None:
        data = await self.file.read()
        if data is None:
            return None
        return ApiKeys.model_validate(data)

    async def save_api_keys(self, user_id: str | None, keys: ApiKeys) -> None:
        await self.file.write(keys.to_dict())
