import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.router import get_api_router
from app.core.config import get_settings
from app.services.continuous_embedding import get_continuous_embedding_service


logger = logging.getLogger(__name__)
settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger("app").setLevel(settings.log_level)

# Silence noisy libraries
for noisy in ("httpx", "httpcore", "openai", "apscheduler", "hpack"):
    logging.getLogger(noisy).setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the continuous embedding scheduler when enabled; stop it on shutdown."""
    service = None
    if settings.continuous_embedding_enabled:
        service = get_continuous_embedding_service()
        await service.start()
        logger.info("Continuous embedding scheduler started")

    yield

    if service is not None:
        service.stop()
        logger.info("Continuous embedding scheduler stopped")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(get_api_router())


@app.get("/")
def root() -> dict:
    return {"message": settings.app_name, "api_prefix": settings.api_prefix}
