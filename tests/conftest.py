from datetime import datetime, timedelta
import json
from types import SimpleNamespace
from typing import Any, Callable

import httpx
import pytest

from domain.llm_service import GenerationClient
from domain.models import ApiKeys, GrantRecipe


class StepClock:
    """Every call is one minute after the previous one."""

    def __init__(self, start: datetime = datetime(2024, 3, 5, 9, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(minutes=1)
        return self.now


class MemoryRecipeRepository:
    def __init__(self, *, requires_user: bool = True) -> None:
        self.requires_user = requires_user
        self.docs: dict[str, dict[str, Any]] = {}
        self.writes = 0
        self.fail_writes = False

    async def list(self, user_id: str | None) -> list[GrantRecipe]:
        return [GrantRecipe.model_validate(d) for d in self.docs.values()]

    async def get(self, user_id: str | None, recipe_id: str) -> GrantRecipe | None:
        doc = self.docs.get(recipe_id)
        return None if doc is None else GrantRecipe.model_validate(doc)

    async def upsert(self, user_id: str | None, recipe: GrantRecipe) -> None:
        if self.fail_writes:
            raise ConnectionError("backing store unavailable")
        self.writes += 1
        self.docs[recipe.id] = recipe.to_dict()

    async def delete(self, user_id: str | None, recipe_id: str) -> None:
        if self.fail_writes:
            raise ConnectionError("backing store unavailable")
        self.docs.pop(recipe_id, None)


class MemorySettingsRepository:
    def __init__(self, *, requires_user: bool = True) -> None:
        self.requires_user = requires_user
        self.keys: ApiKeys | None = None

    async def get_api_keys(self, user_id: str | None) -> ApiKeys | None:
        return self.keys

    async def save_api_keys(self, user_id: str | None, keys: ApiKeys) -> None:
        self.keys = keys


class FakeResponses:
    def __init__(self, output_text: str = "", error: Exception | None = None) -> None:
        self.output_text = output_text
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> SimpleNamespace:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(output_text=self.output_text)


class FakeOpenAI:
    """Stands in for `openai.AsyncOpenAI`, only `responses.create` is used."""

    def __init__(self, output_text: str = "", error: Exception | None = None) -> None:
        self.responses = FakeResponses(output_text, error)
        self.api_keys: list[str] = []
        self.closed = 0

    def __call__(self, api_key: str) -> "FakeOpenAI":
        self.api_keys.append(api_key)
        return self

    async def __aenter__(self) -> "FakeOpenAI":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed += 1

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self.responses.calls


class GeminiStub:
    """httpx handler replying like `generateContent`."""

    def __init__(
        self, text: str = "", status_code: int = 200, body: str | None = None
    ) -> None:
        self.text = text
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(
                self.status_code, json={"error": {"message": "API key not valid"}}
            )
        if self.body is not None:
            return httpx.Response(200, text=self.body)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": self.text}]}}]},
        )


def make_client(
    gemini: Callable[[httpx.Request], httpx.Response] | None = None,
    openai_fake: FakeOpenAI | None = None,
) -> GenerationClient:
    gemini = GeminiStub() if gemini is None else gemini
    return GenerationClient(
        http_client=httpx.AsyncClient(
            base_url="https://generativelanguage.googleapis.com/v1beta/",
            transport=httpx.MockTransport(gemini),
        ),
        openai_factory=FakeOpenAI() if openai_fake is None else openai_fake,
    )


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def gemini_json() -> GeminiStub:
    return GeminiStub(json.dumps({"Summary": "We teach coding.", "Budget": "$10k"}))


@pytest.fixture
def keys() -> ApiKeys:
    return ApiKeys(gemini_api_key="gemini-key", openai_api_key="sk-test")
