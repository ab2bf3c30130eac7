import logging
import random
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import settings
from agents.game_master import GameMaster
from agents.participant_agent import GeminiParticipant
from services.archive_service import get_result_archive
from services.session_registry import SessionRegistry
from routers.game_router import router as game_router
from routers.ws_router import router as ws_router, state_pusher

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    participant=None,
    rng: Optional[random.Random] = None,
    discussion_seconds: Optional[float] = None,
    archive=None,
) -> FastAPI:
    """
    Build the app with its own registry and game master.
    Tests pass a scripted participant; production uses Gemini.
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Undercover backend starting up...")
        registry = SessionRegistry(rng=rng)
        gm = GameMaster(
            registry=registry,
            participant=participant or GeminiParticipant(),
            rng=rng,
            archive=archive if archive is not None else get_result_archive(),
            discussion_seconds=discussion_seconds,
        )
        gm.add_listener(state_pusher(gm))
        app.state.registry = registry
        app.state.game_master = gm
        yield
        gm.timer.cancel_all()
        logger.info("Backend shutting down.")

    app = FastAPI(
        title="Undercover",
        version="0.1.0",
        description="Real-time 3-player word deduction game with one hidden AI seat",
        lifespan=lifespan,
    )

    origins = list(settings.allowed_origins)
    if settings.extra_origin:
        origins.append(settings.extra_origin)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "undercover", "version": "0.1.0"}

    app.include_router(game_router, prefix="/api")
    app.include_router(ws_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
