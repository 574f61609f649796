"""Generation Client: one recipe in, one label-keyed result out.

Stateless. Keys are passed in per call and never kept. No retries.
"""

from enum import Enum
import functools
import json
import logging
import re
from typing import Any, Callable, NamedTuple

import httpx
import openai

from domain.errors import (
    InvalidCredential,
    MissingCredential,
    ProviderRequestFailed,
    UnsupportedModel,
)
from domain.models import ApiKeys, GrantRecipe
from domain.prompts import GrantPrompt


logger = logging.getLogger(__name__)


TIMEOUT = 60 * 2
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/"
FULL_RESPONSE_KEY = "Full Response"
SCHEMA_NAME = "grant_outputs"


class Provider(Enum):
    openai = "OpenAI"
    gemini = "Gemini"


class SupportedModel(Enum):
    GEMINI_25_FLASH = "gemini-2.5-flash"
    GEMINI_25_PRO = "gemini-2.5-pro"
    GPT_51 = "gpt-5.1"


class ModelConfig(NamedTuple):
    provider: Provider
    api_model: str


MODEL_CONFIG: dict[str, ModelConfig] = {
    SupportedModel.GEMINI_25_FLASH.value: ModelConfig(Provider.gemini, "gemini-1.5-flash"),
    SupportedModel.GEMINI_25_PRO.value: ModelConfig(Provider.gemini, "gemini-1.5-pro"),
    SupportedModel.GPT_51.value: ModelConfig(Provider.openai, "gpt-4.1-mini"),
}


def resolve_model(model_type: str) -> ModelConfig:
    try:
        return MODEL_CONFIG[model_type]
    except KeyError:
        raise UnsupportedModel(model_type) from None


def api_key_for(provider: Provider, api_keys: ApiKeys) -> str | None:
    if provider is Provider.openai:
        return api_keys.openai_api_key
    return api_keys.gemini_api_key


def clean_api_key(value: str | None, provider: Provider) -> str:
    if not value:
        raise MissingCredential(provider.value)
    key = value.strip()
    if not key:
        raise InvalidCredential(
            provider.value, f"{provider.value} API key is blank. Add it in Settings -> API Keys."
        )
    if "\r" in key or "\n" in key:
        raise InvalidCredential(
            provider.value,
            f"{provider.value} API key is invalid. Remove line breaks or special characters.",
        )
    if not key.isascii():
        raise InvalidCredential(
            provider.value,
            f"{provider.value} API key contains unsupported characters. "
            "Use only standard ASCII characters.",
        )
    return key


class GenerationResult:
    def __init__(self, *, raw_text: str, structured: dict[str, str]) -> None:
        self.raw_text = raw_text
        self.structured = structured

    def __repr__(self) -> str:
        return f"<GenerationResult(fields={list(self.structured)})>"

    @property
    def is_unstructured(self) -> bool:
        return list(self.structured) == [FULL_RESPONSE_KEY]

    def to_dict(self) -> dict[str, Any]:
        return {"rawText": self.raw_text, "structured": self.structured}


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def output_schema(recipe: GrantRecipe) -> dict[str, Any]:
    labels = list(dict.fromkeys(f.label for f in recipe.output_fields))
    return {
        "type": "object",
        "properties": {
            label: {
                "type": "string",
                "description": f'Grant answer for output field "{label}".',
            }
            for label in labels
        },
        "required": labels,
        "additionalProperties": False,
    }


_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n(.*)\n\s*```$", re.DOTALL)


def strip_code_fence(raw: str) -> str:
    match = _FENCE.match(raw.strip())
    return match.group(1) if match else raw


def parse_structured_output(raw: str) -> GenerationResult:
    """Freeform answers: use a JSON object if there is one, else the raw text."""
    try:
        parsed = json.loads(strip_code_fence(raw))
    except ValueError:
        logger.warning("Failed to parse structured JSON output, using raw text.")
        parsed = None
    if not isinstance(parsed, dict) or not parsed:
        return GenerationResult(raw_text=raw, structured={FULL_RESPONSE_KEY: raw})
    return GenerationResult(
        raw_text=raw,
        structured={str(k): _as_text(v) for k, v in parsed.items()},
    )


def map_schema_output(recipe: GrantRecipe, raw: str) -> GenerationResult:
    """Schema-constrained answers: pick each output field label out of the JSON."""
    structured: dict[str, str] = {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Failed to parse schema output, falling back to raw text.")
        parsed = None
    if isinstance(parsed, dict):
        for field in recipe.output_fields:
            if field.label in parsed:
                structured[field.label] = _as_text(parsed[field.label])
    if not structured:
        structured = {FULL_RESPONSE_KEY: raw}
    return GenerationResult(raw_text=raw, structured=structured)


def openai_client_factory(api_key: str, timeout: float = TIMEOUT) -> openai.AsyncOpenAI:
    return openai.AsyncOpenAI(api_key=api_key, max_retries=0, timeout=timeout)


def gemini_client_factory(timeout: float = TIMEOUT) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=GEMINI_BASE_URL,
        headers={"Content-Type": "application/json"},
        timeout=timeout,
    )


class GenerationClient:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        openai_factory: Callable[[str], openai.AsyncOpenAI] | None = None,
        timeout: float = TIMEOUT,
    ) -> None:
        self.http_client = (
            gemini_client_factory(timeout) if http_client is None else http_client
        )
        self.openai_factory = (
            functools.partial(openai_client_factory, timeout=timeout)
            if openai_factory is None
            else openai_factory
        )

    def check_credentials(
        self, model_type: str, api_keys: ApiKeys
    ) -> tuple[ModelConfig, str]:
        config = resolve_model(model_type)
        return config, clean_api_key(api_key_for(config.provider, api_keys), config.provider)

    async def generate(
        self,
        model_type: str,
        recipe: GrantRecipe,
        api_keys: ApiKeys,
    ) -> GenerationResult:
        config, api_key = self.check_credentials(model_type, api_keys)
        prompt = GrantPrompt(recipe)
        logger.info(
            "Calling %s model %s for recipe %s (project context: %s, %s files)",
            config.provider.value,
            config.api_model,
            recipe.id,
            recipe.project_context_enabled,
            len(recipe.project_context_files),
        )
        if config.provider is Provider.openai:
            return await self._generate_openai(config.api_model, recipe, prompt, api_key)
        return await self._generate_gemini(config.api_model, prompt, api_key)

    async def _generate_openai(
        self,
        api_model: str,
        recipe: GrantRecipe,
        prompt: GrantPrompt,
        api_key: str,
    ) -> GenerationResult:
        try:
            async with self.openai_factory(api_key) as client:
                resp = await client.responses.create(
                    model=api_model,
                    instructions=prompt.system,
                    input=prompt.user,
                    text={
                        "format": {
                            "type": "json_schema",
                            "name": SCHEMA_NAME,
                            "schema": output_schema(recipe),
                            "strict": True,
                        }
                    },
                )
        except openai.APIStatusError as e:
            logger.error("OpenAI error status %s body: %s", e.status_code, e.body)
            raise ProviderRequestFailed(Provider.openai.value) from e
        except openai.APIError as e:
            logger.error("OpenAI request failed: %r", e)
            raise ProviderRequestFailed(Provider.openai.value) from e
        raw = resp.output_text or resp.model_dump_json()
        return map_schema_output(recipe, raw)

    async def _generate_gemini(
        self,
        api_model: str,
        prompt: GrantPrompt,
        api_key: str,
    ) -> GenerationResult:
        try:
            resp = await self.http_client.post(
                f"models/{api_model}:generateContent",
                headers={"x-goog-api-key": api_key},
                json={"contents": [{"role": "user", "parts": [{"text": str(prompt)}]}]},
            )
        except httpx.HTTPError as e:
            logger.error("Gemini request failed: %r", e)
            raise ProviderRequestFailed(Provider.gemini.value) from e
        if resp.is_error:
            logger.error("Gemini error status %s body: %s", resp.status_code, resp.text)
            raise ProviderRequestFailed(Provider.gemini.value)

        try:
            data = resp.json()
        except ValueError:
            logger.warning("Gemini reply is not JSON, using raw body.")
            return parse_structured_output(resp.text)
        try:
            raw = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raw = json.dumps(data)
        return parse_structured_output(raw)

    async def close(self) -> None:
        await self.http_client.aclose()


async def generate(
    model_type: str,
    recipe: GrantRecipe,
    api_keys: ApiKeys,
    *,
    client: GenerationClient | None = None,
) -> GenerationResult:
    if client is not None:
        return await client.generate(model_type, recipe, api_keys)
    client = GenerationClient()
    try:
        return await client.generate(model_type, recipe, api_keys)
    finally:
        await client.close()
