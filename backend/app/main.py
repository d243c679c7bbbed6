"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Response
from fastapi.exceptions import RequestValidationError
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import (
    setup_cors_middleware, security_middleware,
    http_exception_handler, validation_exception_handler, global_exception_handler
)
from app.core.otel import setup_otel, instrument_app
from app.db.session import engine, init_db
from app.db.redis import get_redis_client
from app.services.email_service import validate_email_config
from app.api import auth, tweets, ai, twitter

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    setup_otel(engine)

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    email_ok, email_error = validate_email_config()
    if not email_ok:
        logger.warning(f"Password reset emails disabled: {email_error}")

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        from app.tasks.scheduler import scheduler_task
        scheduler = asyncio.create_task(scheduler_task())
        logger.info("Scheduled tweet dispatcher started")

    yield

    logger.info("Shutting down...")
    if scheduler:
        scheduler.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler


app = FastAPI(
    title="TweetWiseAI Backend",
    description="Tweet composer with AI suggestions and Twitter posting",
    version="1.0.0",
    lifespan=lifespan
)

instrument_app(app)
setup_cors_middleware(app)

app.include_router(auth.router)
app.include_router(tweets.router)
app.include_router(ai.router)
app.include_router(twitter.router)

app.middleware("http")(security_middleware)

app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)


@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
