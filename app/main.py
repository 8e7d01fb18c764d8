import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
import alembic.config
import alembic.command
from app.core.config import settings
from app.core.database import engine
from app.core.generation.pipeline import build_pipeline
from app.api.router import api_router

def configure_logging(level: str = settings.LOG_LEVEL):
    """Root logging for the service. The level applies even if a handler already exists."""
    logging.basicConfig(level=level)
    logging.getLogger().setLevel(level)


configure_logging()
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


# Build the pipeline on startup, drain the audit queue and close everything on shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    try:
        await asyncio.to_thread(run_migrations)
        logger.info("Migrations applied successfully (or already up-to-date)")
    except Exception as e:
        logger.error(f"Migration error during startup: {e}")
    # alembic.ini's logging section resets the root level
    configure_logging()

    pipeline = build_pipeline(settings)
    await pipeline.start()
    app.state.pipeline = pipeline
    logger.info(f"Generation pipeline ready ({settings.LLM_PROVIDER} / {pipeline.backend.model})")

    yield

    await pipeline.aclose()
    await engine.dispose()


app = FastAPI(title="Code Generation Agent API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the Code Generation Agent API"}
