from enum import Enum
import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.logging import RichHandler

from domain.models import DEFAULT_MODEL_TYPE
from domain.services import Backend


class Env(Enum):
    local = "local"
    dev = "dev"
    prod = "prod"


class Config(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GRANTER_")

    env: Env = Env.local
    html_dir: Path = Path("assets/html")
    backend: Backend = Backend.local
    db_url: str = "sqlite+aiosqlite:///granter.db"
    local_storage_dir: Path = Path(".granter")
    recipes_storage_key: str = "granter.grantRecipes"
    settings_storage_key: str = "granter.apiKeys"
    user_id: str | None = None
    default_model_type: str = DEFAULT_MODEL_TYPE
    request_timeout: float = 60 * 2
    log_level: str = "INFO"


def configure_logging(config: Config) -> None:
    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
