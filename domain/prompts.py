from domain.models import GrantRecipe


SYSTEM_PROMPT = """
You are an expert grant-writing assistant.
You write grant proposal sections for nonprofit and research funding applications
and you always answer with structured JSON output: a single JSON object whose keys
are the requested output field labels and whose values are the written sections.
Respect the length budget given for each output field.
""".strip()


CLOSING_INSTRUCTION = (
    "Return answers that could be pasted directly into a grant application."
)


def render_input_params(recipe: GrantRecipe) -> str:
    if not recipe.input_params:
        return "None"
    return "\n".join(f"- {p.key}: {p.value}" for p in recipe.input_params)


def render_output_fields(recipe: GrantRecipe) -> str:
    if not recipe.output_fields:
        return "None"
    return "\n".join(f"- {f.label} ({f.budget})" for f in recipe.output_fields)


class GrantPrompt:
    """System instruction and user message for one recipe."""

    def __init__(self, recipe: GrantRecipe, *, system: str | None = None) -> None:
        self.recipe = recipe
        self.system = SYSTEM_PROMPT if system is None else system

    @property
    def user(self) -> str:
        recipe = self.recipe
        return "\n\n".join(
            [
                f"Grant recipe description:\n{recipe.description or '(none)'}",
                f"Base prompt for the grant:\n{recipe.prompt or '(none)'}",
                f"Input parameters:\n{render_input_params(recipe)}",
                f"Output fields:\n{render_output_fields(recipe)}",
                CLOSING_INSTRUCTION,
            ]
        )

    def __str__(self) -> str:
        return f"{self.system}\n\n{self.user}"
