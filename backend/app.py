import logging

from fastapi import FastAPI

from backend.routes import router
from childsim.accounting import TokenAccountant
from childsim.config import Settings, build_gateway, load_settings
from childsim.engine.machine import GameSession
from childsim.llm import ModelGateway
from childsim.storage import CheckpointStore

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, gateway: ModelGateway | None = None) -> FastAPI:
    resolved = settings or load_settings()
    session = GameSession(
        gateway or build_gateway(resolved),
        CheckpointStore(resolved.data_dir),
        streaming=resolved.streaming,
        accountant=TokenAccountant(resolved.prompt_rate, resolved.completion_rate),
    )
    if session.resume():
        logger.info("picked up the saved game from %s", resolved.data_dir)

    app = FastAPI(title="Child Sim")
    app.state.settings = resolved
    app.state.session = session
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR and CHILDSIM_* env vars)
app = create_app()
