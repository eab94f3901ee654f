"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from gleaming.config import FetchConfig, IngestConfig, Settings, settings
from gleaming.database import engine, get_db
from gleaming.errors import AppError, internal_error
from gleaming.models import Base
from gleaming.services.file_storage import ContentStore, create_byte_store
from gleaming.services.image_service import ImageService
from gleaming.services.url_fetcher import UrlFetcher
from gleaming.services.validator import PayloadValidator

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def init_services(app: FastAPI, config: Settings) -> None:
    """Build the long-lived services and attach them to ``app.state``."""
    ingest_config = IngestConfig.from_settings(config)
    image_service = ImageService()
    app.state.ingest_config = ingest_config
    app.state.image_service = image_service
    app.state.content_store = ContentStore(create_byte_store(config))
    app.state.validator = PayloadValidator(ingest_config, image_service)
    app.state.fetcher = UrlFetcher(FetchConfig.from_settings(config))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, open the outbound HTTP session, close everything on shutdown."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    init_services(app, settings)
    await app.state.fetcher.open()
    logger.info("Storage at %s, max file size %d bytes", settings.FILE_STORAGE_PATH, settings.MAX_FILE_SIZE)

    yield

    # Cleanup
    await app.state.fetcher.close()
    await engine.dispose()


app = FastAPI(
    title="Gleaming Files API",
    version="1.0.0",
    description="Content-addressed file ingestion and storage.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status, content=exc.to_dict())


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    error = internal_error("Database error")
    return JSONResponse(status_code=error.status, content=error.to_dict())


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from gleaming.routes.files import router as files_router
from gleaming.routes.properties import router as properties_router
app.include_router(files_router)
app.include_router(properties_router)
