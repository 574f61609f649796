"""Recipe Editor Workflow.

One editing session over one recipe's working copy:

    new -> dirty -> persisted -> locked

`persisted` and `dirty` alternate until a generation locks the recipe.
A locked recipe can only be cloned, which starts a new session.
"""

from enum import Enum
import logging
from typing import Any, Callable, Mapping, NamedTuple

from domain.errors import (
    NotAuthenticated,
    RecipeLocked,
    RecipeNotFound,
    ValidationFailed,
)
from domain.llm_service import GenerationClient, GenerationResult
from domain.models import (
    ApiKeys,
    GrantRecipe,
    InputParam,
    OutputField,
    blank_recipe,
    derive_clone,
    normalize_updates,
)
from domain.store import RecipeStore


logger = logging.getLogger(__name__)


# Derived or workflow-owned; never taken from an edit.
READ_ONLY_FIELDS = ("id", "token_count", "updated_at", "locked", "structured_output")


class EditorState(Enum):
    new = "new"
    dirty = "dirty"
    persisted = "persisted"
    locked = "locked"


class ProjectContextToggled(NamedTuple):
    enabled: bool
    file_count: int


def _join_requirements(parts: list[str]) -> str:
    if len(parts) == 1:
        return parts[0]
    return ", ".join(parts[:-1]) + f" and {parts[-1]}"


class RecipeEditor:
    def __init__(
        self,
        store: RecipeStore,
        client: GenerationClient,
        *,
        recipe: GrantRecipe | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self._recipe = blank_recipe() if recipe is None else recipe
        self._dirty = False
        self.not_found = False
        self.listeners: list[Callable[[ProjectContextToggled], None]] = []

    @classmethod
    def open(
        cls,
        store: RecipeStore,
        client: GenerationClient,
        recipe_id: str | None = None,
    ) -> "RecipeEditor":
        if not recipe_id:
            return cls(store, client)
        recipe = store.get(recipe_id)
        if recipe is None:
            logger.info("Recipe %s not found, starting a new one", recipe_id)
            editor = cls(store, client)
            editor.not_found = True
            return editor
        return cls(store, client, recipe=recipe)

    @property
    def recipe(self) -> GrantRecipe:
        return self._recipe.model_copy(deep=True)

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def state(self) -> EditorState:
        if self._recipe.locked:
            return EditorState.locked
        if self._dirty:
            return EditorState.dirty
        if not self._recipe.id:
            return EditorState.new
        return EditorState.persisted

    def _ensure_unlocked(self) -> None:
        if self._recipe.locked:
            raise RecipeLocked()

    def _replace(self, recipe: GrantRecipe) -> None:
        self._recipe = recipe
        self._dirty = True

    def apply(self, updates: Mapping[str, Any]) -> None:
        self._ensure_unlocked()
        changes = {
            k: v
            for k, v in normalize_updates(updates).items()
            if k not in READ_ONLY_FIELDS
        }
        if changes:
            self._replace(self._recipe.merged(changes))

    def set_field(self, name: str, value: Any) -> None:
        self.apply({name: value})

    def add_input_param(self) -> InputParam:
        self._ensure_unlocked()
        param = InputParam()
        self._replace(
            self._recipe.model_copy(
                update={"input_params": self._recipe.input_params + [param]}
            )
        )
        return param

    def update_input_param(
        self,
        param_id: str,
        *,
        key: str | None = None,
        value: str | None = None,
    ) -> None:
        self._ensure_unlocked()
        if param_id not in {p.id for p in self._recipe.input_params}:
            raise ValidationFailed(f"Unknown input parameter: {param_id}")
        changes = {k: v for k, v in (("key", key), ("value", value)) if v is not None}
        self._replace(
            self._recipe.model_copy(
                update={
                    "input_params": [
                        p.model_copy(update=changes) if p.id == param_id else p
                        for p in self._recipe.input_params
                    ]
                }
            )
        )

    def remove_input_param(self, param_id: str) -> None:
        self._ensure_unlocked()
        self._replace(
            self._recipe.model_copy(
                update={
                    "input_params": [
                        p for p in self._recipe.input_params if p.id != param_id
                    ]
                }
            )
        )

    def add_output_field(self) -> OutputField:
        self._ensure_unlocked()
        field = OutputField()
        self._replace(
            self._recipe.model_copy(
                update={"output_fields": self._recipe.output_fields + [field]}
            )
        )
        return field

    def update_output_field(self, field_id: str, **changes: Any) -> None:
        self._ensure_unlocked()
        if field_id not in {f.id for f in self._recipe.output_fields}:
            raise ValidationFailed(f"Unknown output field: {field_id}")
        fields = [
            f.model_dump() | changes if f.id == field_id else f.model_dump()
            for f in self._recipe.output_fields
        ]
        self._replace(self._recipe.merged({"output_fields": fields}))

    def remove_output_field(self, field_id: str) -> None:
        self._ensure_unlocked()
        self._replace(
            self._recipe.model_copy(
                update={
                    "output_fields": [
                        f for f in self._recipe.output_fields if f.id != field_id
                    ]
                }
            )
        )

    def attach_project_files(self, file_ids: list[str]) -> None:
        self.apply({"project_context_files": file_ids})

    def toggle_project_context(self, enabled: bool) -> bool:
        """Returns False, changing nothing, when no files are attached."""
        self._ensure_unlocked()
        if not self._recipe.project_context_files:
            return False
        self.apply({"project_context_enabled": enabled})
        event = ProjectContextToggled(
            enabled=enabled, file_count=len(self._recipe.project_context_files)
        )
        for listener in self.listeners:
            listener(event)
        return True

    async def save(self, *, force: bool = False) -> GrantRecipe | None:
        """Persist the working copy. Returns None when there is nothing to save."""
        if self._recipe.id and (self._recipe.locked or not (force or self._dirty)):
            return self.recipe
        if not self.store.can_write:
            raise NotAuthenticated("Sign in to save your recipe.")
        if not self._recipe.id and not self._recipe.has_content():
            return None

        if self._recipe.id and self.store.get(self._recipe.id) is not None:
            saved = await self.store.update(self._recipe.id, self._recipe)
        else:
            saved = await self.store.create(self._recipe)
        assert saved is not None

        self._recipe = saved
        self._dirty = False
        return self.recipe

    def _check_ready(self) -> None:
        missing: list[str] = []
        wanted: list[str] = []
        if not self._recipe.description.strip():
            missing.append("description")
            wanted.append("a description")
        if not self._recipe.prompt.strip():
            missing.append("prompt")
            wanted.append("a prompt")
        if not self._recipe.output_fields:
            missing.append("output field")
            wanted.append("at least one output field")
        if missing:
            raise ValidationFailed(
                f"Please provide {_join_requirements(wanted)}.", missing=missing
            )

    async def generate(self, api_keys: ApiKeys) -> GenerationResult:
        self._check_ready()
        self.client.check_credentials(self._recipe.model_type, api_keys)

        saved = await self.save(force=True)
        if saved is None:
            raise ValidationFailed("Nothing to generate from.")

        result = await self.client.generate(saved.model_type, saved, api_keys)

        if self._recipe.locked:
            self._recipe = self._recipe.model_copy(
                update={"structured_output": result.structured}
            )
            return result

        locked = await self.store.update(
            saved.id, {"locked": True, "structured_output": result.structured}
        )
        if locked is None:
            raise RecipeNotFound()
        logger.info("Locked recipe %s after generation", saved.id)
        self._recipe = locked
        return result

    async def clone(self) -> "RecipeEditor | None":
        if not self._recipe.has_content():
            return None
        if self._dirty or not self._recipe.id:
            await self.save(force=True)

        copy = derive_clone(self._recipe, when=self.store.clock())
        created = await self.store.create(copy)
        logger.info("Cloned recipe %s into %s", self._recipe.id, created.id)
        return RecipeEditor(self.store, self.client, recipe=created)
