import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from character_tools.config import SettingsStore, load_env
from character_tools.history import JsonHistoryStore
from character_tools.llm import GenerationTransport
from character_tools.routes import router

load_dotenv(Path(__file__).parent.parent / ".env")

logger = logging.getLogger(__name__)


def create_app(
    data_dir: Path | None = None,
    transport: GenerationTransport | None = None,
) -> FastAPI:
    env = load_env()
    resolved = data_dir or env.data_dir
    settings_store = SettingsStore(resolved)

    logging.getLogger("character_tools").setLevel(
        logging.DEBUG if settings_store.get().debug_mode else logging.INFO
    )

    app = FastAPI(title="Character Tools")
    app.state.env = env
    app.state.settings_store = settings_store
    app.state.history = JsonHistoryStore(resolved)
    # None builds an httpx transport per session from the environment
    app.state.transport = transport
    app.state.sessions = {}
    app.include_router(router, prefix="/api")

    logger.info("character tools ready data_dir=%s provider=%s", resolved, env.provider_url)
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
