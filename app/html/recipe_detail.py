from jinja2 import Environment
from markdown2 import (  # pyright: ignore[reportMissingTypeStubs]
    markdown,  # pyright: ignore[reportUnknownVariableType]
)
from markupsafe import Markup

from domain.llm_service import FULL_RESPONSE_KEY
from domain.models import GrantRecipe


class OutputSection:
    def __init__(self, label: str, text: str) -> None:
        self.label = label
        self.text = text

    @property
    def html(self) -> str:
        return Markup(markdown(self.text, safe_mode="escape", extras=["fences", "tables"]))


class RecipeDetail:
    def __init__(
        self,
        recipe: GrantRecipe,
        *,
        environment: Environment,
        template_name: str = "recipe-detail.html",
    ) -> None:
        self.recipe = recipe
        self.env = environment
        self.name = template_name

    @property
    def title(self) -> str:
        return self.recipe.description or "Untitled recipe"

    @property
    def unstructured(self) -> bool:
        output = self.recipe.structured_output or {}
        return list(output) == [FULL_RESPONSE_KEY]

    @property
    def sections(self) -> list[OutputSection]:
        """Generated output in output field order, then anything left over."""
        output = dict(self.recipe.structured_output or {})
        sections: list[OutputSection] = []
        for field in self.recipe.output_fields:
            if field.label in output:
                sections.append(OutputSection(field.label, output.pop(field.label)))
        sections.extend(OutputSection(label, text) for label, text in output.items())
        return sections

    def render(self) -> str:
        return self.env.get_template(self.name).render(recipe=self)
