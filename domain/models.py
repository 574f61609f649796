from datetime import datetime
from enum import Enum
import math
from typing import Any, Mapping
import uuid

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from domain.errors import ValidationFailed


DISPLAY_TIMESTAMP_FORMAT = "%m/%d/%Y %H:%M"
SORTABLE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M"
DEFAULT_MODEL_TYPE = "gemini-2.5-flash"
DEFAULT_OUTPUT_MAX = 150
COPY_SUFFIX = " (copy)"


def new_id() -> str:
    return str(uuid.uuid4())


def compute_token_count(prompt: str | None) -> int:
    """Rough token estimate, about four characters per token. Halves round up."""
    return max(0, math.floor(len(prompt or "") / 4 + 0.5))


def format_timestamp(when: datetime) -> str:
    return when.strftime(DISPLAY_TIMESTAMP_FORMAT)


def sortable_timestamp(updated_at: str) -> str:
    """`MM/DD/YYYY HH:MM` to `YYYY-MM-DD HH:MM`. Unparseable values sort last."""
    try:
        when = datetime.strptime(updated_at, DISPLAY_TIMESTAMP_FORMAT)
    except ValueError:
        return ""
    return when.strftime(SORTABLE_TIMESTAMP_FORMAT)


class LimitType(str, Enum):
    words = "words"
    chars = "chars"


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, protected_namespaces=()
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class InputParam(_Document):
    id: str = Field(default_factory=new_id)
    key: str = ""
    value: str = ""

    def is_blank(self) -> bool:
        return not (self.key.strip() or self.value.strip())


class OutputField(_Document):
    id: str = Field(default_factory=new_id)
    label: str = ""
    max: PositiveInt = DEFAULT_OUTPUT_MAX
    limit_type: LimitType = LimitType.words

    def is_blank(self) -> bool:
        return (
            not self.label.strip()
            and self.max == DEFAULT_OUTPUT_MAX
            and self.limit_type == LimitType.words
        )

    @property
    def budget(self) -> str:
        return f"up to {self.max} {self.limit_type.value}"


class GrantRecipe(_Document):
    id: str = ""
    description: str = ""
    prompt: str = ""
    input_params: list[InputParam] = Field(default_factory=list)
    output_fields: list[OutputField] = Field(default_factory=list)
    token_count: int = 0
    model_type: str = DEFAULT_MODEL_TYPE
    updated_at: str = ""
    project_context_enabled: bool = False
    project_context_files: list[str] = Field(default_factory=list)
    locked: bool = False
    structured_output: dict[str, str] | None = None

    @field_validator("project_context_files")
    @classmethod
    def _dedupe_files(cls, files: list[str]) -> list[str]:
        return list(dict.fromkeys(files))

    @model_validator(mode="after")
    def _check_invariants(self) -> "GrantRecipe":
        if not self.project_context_files:
            self.project_context_enabled = False
        for name, children in (
            ("input parameter", self.input_params),
            ("output field", self.output_fields),
        ):
            ids = [c.id for c in children]
            if len(ids) != len(set(ids)):
                raise ValueError(f"Duplicate {name} ids.")
        return self

    def has_content(self) -> bool:
        return bool(
            self.description.strip()
            or self.prompt.strip()
            or any(not p.is_blank() for p in self.input_params)
            or any(not f.is_blank() for f in self.output_fields)
        )

    def merged(self, updates: Mapping[str, Any]) -> "GrantRecipe":
        data = self.model_dump()
        data.update(normalize_updates(updates))
        return build_recipe(data)

    def __repr__(self) -> str:
        return f"<GrantRecipe(id={self.id}, description={self.description})>"


_FIELD_NAMES = {
    (info.alias or name): name for name, info in GrantRecipe.model_fields.items()
} | {name: name for name in GrantRecipe.model_fields}


def normalize_updates(updates: Mapping[str, Any]) -> dict[str, Any]:
    """Accept snake_case or camelCase keys, return snake_case keys."""
    normalized: dict[str, Any] = {}
    for key, value in updates.items():
        if key not in _FIELD_NAMES:
            raise ValidationFailed(f"Unknown recipe field: {key}")
        normalized[_FIELD_NAMES[key]] = value
    return normalized


def build_recipe(data: Mapping[str, Any]) -> GrantRecipe:
    try:
        return GrantRecipe.model_validate(normalize_updates(data))
    except ValidationError as e:
        raise ValidationFailed(f"Invalid recipe: {e.errors()[0]['msg']}") from e


def blank_recipe() -> GrantRecipe:
    """An unsaved recipe as the editor starts it."""
    return GrantRecipe(input_params=[InputParam()], output_fields=[OutputField()])


def derive_clone(source: GrantRecipe, *, when: datetime) -> GrantRecipe:
    description = source.description
    if not description.endswith(COPY_SUFFIX):
        description += COPY_SUFFIX
    return source.model_copy(
        update={
            "id": new_id(),
            "description": description,
            "input_params": [
                p.model_copy(update={"id": new_id()}) for p in source.input_params
            ],
            "output_fields": [
                f.model_copy(update={"id": new_id()}) for f in source.output_fields
            ],
            "project_context_files": list(source.project_context_files),
            "token_count": compute_token_count(source.prompt),
            "updated_at": format_timestamp(when),
            "locked": False,
            "structured_output": None,
        }
    )


class ApiKeys(_Document):
    gemini_api_key: str | None = None
    openai_api_key: str | None = None
