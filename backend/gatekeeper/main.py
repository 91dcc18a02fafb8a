import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .db.base import SessionLocal, engine, init_db

# Ensure logs directory exists
logs_dir = Path(__file__).parent.parent / "logs"
logs_dir.mkdir(exist_ok=True)

# Configure both file and console logging
logging.basicConfig(
    level=logging.DEBUG if get_settings().DEBUG_AI else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(logs_dir / "gatekeeper.log", encoding="utf-8"),
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .services.moderation import get_moderation_service
    from .workers.review_worker import get_review_worker

    settings = get_settings()
    init_db()

    stop = asyncio.Event()
    worker_task = None
    if settings.REVIEW_WORKER_ENABLED:
        worker = get_review_worker()
        app.state.review_worker = worker
        worker_task = asyncio.create_task(worker.run_forever(stop))
    else:
        logger.info("Review worker disabled via REVIEW_WORKER_ENABLED=False")
    try:
        yield
    finally:
        stop.set()
        if worker_task is not None:
            try:
                await worker_task
            except Exception as e:
                logger.warning("Review worker shutdown failed: %s", e)
        try:
            await get_moderation_service().moderator.security.close()
        except Exception as e:
            logger.warning("Cache shutdown failed: %s", e)
        try:
            SessionLocal.remove()
        except Exception as e:
            logger.warning("SessionLocal.remove() failed: %s", e)
        try:
            engine.dispose()
        except Exception as e:
            logger.warning("engine.dispose() failed: %s", e)
        # Close logging file handlers to avoid unclosed file warnings during tests
        root_logger = logging.getLogger()
        for h in list(root_logger.handlers):
            try:
                h.flush()
                h.close()
            except Exception:
                pass
            root_logger.removeHandler(h)


settings = get_settings()

app = FastAPI(
    title="Huddle Gatekeeper API",
    description="Chat moderation gatekeeper for the Huddle sports app",
    version=settings.VERSION,
    docs_url=f"{settings.API_PREFIX}/docs",
    redoc_url=f"{settings.API_PREFIX}/redoc",
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get(f"{settings.API_PREFIX}/health")
async def health_check():
    return {
        "status": "healthy",
        "service": settings.PROJECT_NAME,
        "environment": get_settings().ENVIRONMENT,
    }


from .api.v1.routers import moderation  # noqa: E402

# API v1 routes
app.include_router(moderation.router, prefix=f"{settings.API_PREFIX}/v1", tags=["moderation"])


# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )
