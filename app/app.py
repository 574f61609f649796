import contextlib
import functools
import logging
from typing import Any, Awaitable, Callable

from jinja2 import Environment, FileSystemLoader, select_autoescape
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route

from app import config
from app.html.recipe_detail import RecipeDetail
from domain.editor import RecipeEditor
from domain.errors import GranterError, RecipeNotFound, ValidationFailed
from domain.llm_service import GenerationClient
from domain.models import ApiKeys
from domain.repository import create_tables
from domain.services import (
    Repositories,
    build_repositories,
    credential_store,
    open_recipe_store,
)
from domain.store import RecipeStore


logger = logging.getLogger(__name__)


USER_HEADER = "X-User-Id"


def aHTMLResponse(route: Callable[..., Awaitable[str | tuple[str, int]]]):
    @functools.wraps(route)
    async def wrapper(*args: Any, **kwargs: Any) -> HTMLResponse:
        resp = await route(*args, **kwargs)
        if not isinstance(resp, tuple):
            html, code = resp, 200
        else:
            html, code = resp
        return HTMLResponse(html, status_code=code)

    return wrapper


def current_user(request: Request) -> str | None:
    return request.headers.get(USER_HEADER) or request.app.state.config.user_id


async def recipe_store(request: Request) -> RecipeStore:
    """The signed-in user's store, loaded once per user."""
    user_id = current_user(request)
    stores: dict[str | None, RecipeStore] = request.app.state.stores
    if user_id not in stores:
        stores[user_id] = await open_recipe_store(
            request.app.state.repositories, user_id=user_id
        )
    return stores[user_id]


async def open_editor(request: Request) -> RecipeEditor:
    store = await recipe_store(request)
    editor = RecipeEditor.open(store, request.app.state.llm, request.path_params["id"])
    if editor.not_found:
        raise RecipeNotFound()
    return editor


async def read_json(request: Request) -> dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise ValidationFailed("Request body is not valid JSON.") from None
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object.")
    return data


def key_status(keys: ApiKeys) -> dict[str, bool]:
    return {
        "geminiApiKey": bool(keys.gemini_api_key),
        "openaiApiKey": bool(keys.openai_api_key),
    }


async def granter_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, GranterError)
    logger.info("%s: %s", type(exc).__name__, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@aHTMLResponse
async def homepage(request: Request) -> str:
    store = await recipe_store(request)
    templates: Environment = request.app.state.templates
    return templates.get_template("recipe-list.html").render(
        recipes=store.list(), signed_in=store.can_write
    )


@aHTMLResponse
async def recipe_page(request: Request) -> str | tuple[str, int]:
    store = await recipe_store(request)
    recipe = store.get(request.path_params["id"])
    if recipe is None:
        return (
            request.app.state.templates.get_template("not-found.html").render(),
            404,
        )
    return RecipeDetail(recipe, environment=request.app.state.templates).render()


async def list_recipes(request: Request) -> JSONResponse:
    store = await recipe_store(request)
    return JSONResponse([r.to_dict() for r in store.list()])


async def create_recipe(request: Request) -> JSONResponse:
    data = await read_json(request)
    if not {"modelType", "model_type"} & data.keys():
        data["modelType"] = request.app.state.config.default_model_type
    store = await recipe_store(request)
    editor = RecipeEditor(store, request.app.state.llm)
    editor.apply(data)
    saved = await editor.save()
    if saved is None:
        raise ValidationFailed("Add a description, prompt, input or output first.")
    return JSONResponse(saved.to_dict(), status_code=201)


async def get_recipe(request: Request) -> JSONResponse:
    store = await recipe_store(request)
    recipe = store.get(request.path_params["id"])
    if recipe is None:
        raise RecipeNotFound()
    return JSONResponse(recipe.to_dict())


async def update_recipe(request: Request) -> JSONResponse:
    data = await read_json(request)
    editor = await open_editor(request)
    editor.apply(data)
    saved = await editor.save()
    assert saved is not None
    return JSONResponse(saved.to_dict())


async def delete_recipe(request: Request) -> Response:
    store = await recipe_store(request)
    await store.delete(request.path_params["id"])
    return Response(status_code=204)


async def generate(request: Request) -> JSONResponse:
    editor = await open_editor(request)
    keys = await credential_store(
        request.app.state.repositories, user_id=current_user(request)
    ).load()
    result = await editor.generate(keys)
    return JSONResponse({"recipe": editor.recipe.to_dict(), "result": result.to_dict()})


async def clone_recipe(request: Request) -> JSONResponse:
    editor = await open_editor(request)
    copy = await editor.clone()
    if copy is None:
        raise ValidationFailed("Nothing to clone yet.")
    return JSONResponse(copy.recipe.to_dict(), status_code=201)


async def api_keys(request: Request) -> JSONResponse:
    keys_store = credential_store(
        request.app.state.repositories, user_id=current_user(request)
    )
    match request.method.lower():
        case "get":
            keys = await keys_store.load()
        case "put":
            keys = await keys_store.save(await read_json(request))
        case _:
            raise ValueError("Unsupported method.")
    return JSONResponse(key_status(keys))


def create_app(
    conf: config.Config | None = None,
    *,
    llm: GenerationClient | None = None,
    repositories: Repositories | None = None,
) -> Starlette:
    conf = config.Config() if conf is None else conf
    config.configure_logging(conf)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        database = app.state.repositories.database
        if database is not None:
            await database.connect()
            await create_tables(database)
        yield
        await app.state.llm.close()
        if database is not None:
            await database.disconnect()

    app = Starlette(
        debug=True if conf.env == config.Env.local else False,
        routes=[
            Route("/", homepage),
            Route("/grant-recipes/{id}", recipe_page),
            Route("/api/recipes", list_recipes, methods=["GET"]),
            Route("/api/recipes", create_recipe, methods=["POST"]),
            Route("/api/recipes/{id}", get_recipe, methods=["GET"]),
            Route("/api/recipes/{id}", update_recipe, methods=["PATCH"]),
            Route("/api/recipes/{id}", delete_recipe, methods=["DELETE"]),
            Route("/api/recipes/{id}/generate", generate, methods=["POST"]),
            Route("/api/recipes/{id}/clone", clone_recipe, methods=["POST"]),
            Route("/api/settings/api-keys", api_keys, methods=["GET", "PUT"]),
        ],
        exception_handlers={GranterError: granter_error},
        lifespan=lifespan,
    )

    app.state.config = conf
    app.state.templates = Environment(
        loader=FileSystemLoader(conf.html_dir),
        autoescape=select_autoescape(),
    )
    app.state.repositories = (
        build_repositories(
            conf.backend,
            db_url=conf.db_url,
            local_dir=conf.local_storage_dir,
            recipes_key=conf.recipes_storage_key,
            settings_key=conf.settings_storage_key,
        )
        if repositories is None
        else repositories
    )
    app.state.llm = (
        GenerationClient(timeout=conf.request_timeout) if llm is None else llm
    )
    app.state.stores = {}
    return app


app = create_app()
