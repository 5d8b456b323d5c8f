import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from practice_backend.config import get_settings
from practice_backend.database import init_db, set_db_path
from practice_backend.dependencies import close_llm_service, init_llm_service
from practice_backend.exceptions import CacheStorageError
from practice_backend.routers import chat, health, llm

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    # Ensure data directory exists
    db_path = Path(settings.database_url)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    # Initialize database
    set_db_path(settings.database_url)
    await init_db()

    service = init_llm_service(settings)
    try:
        removed = await service.clean_cache()
        logger.info("Startup cache sweep removed %d expired entries", removed)
    except CacheStorageError as e:
        logger.warning("Startup cache sweep failed: %s", e)
    logger.info("Practice backend started with platform %s", service.platform.type.value)

    yield

    await close_llm_service()
    logger.info("Practice backend shutting down")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Practice Backend API",
        description="Education practice backend with a cached multi-platform LLM gateway",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Routers
    app.include_router(health.router)
    app.include_router(llm.router)
    app.include_router(chat.router)

    # CORS: read allowed origins from env
    extra_origins = os.environ.get("ALLOWED_ORIGINS", "")
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    if extra_origins:
        origins.extend(o.strip() for o in extra_origins.split(",") if o.strip())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


app = create_app()


@app.get("/")
async def read_root():
    return {
        "status": "ok",
        "message": "Practice backend is running",
        "docs": "/docs",
    }
