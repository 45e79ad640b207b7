from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

import config
import document_store
from database import engine, Base
from errors import register_exception_handlers
from middleware import RateLimitMiddleware, RequestLoggingMiddleware, RequestTimeoutMiddleware
from routers import health, logs, tasks

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title=config.APP_NAME,
        description="Task management API with soft delete, restore and audit logging",
        version=config.APP_VERSION,
    )

    # Innermost first: the timeout guard wraps only the handler
    app.add_middleware(RequestTimeoutMiddleware, timeout=config.REQUEST_TIMEOUT_SECONDS)
    if config.RATE_LIMIT_PER_MINUTE > 0:
        logger.info(f"Rate limiting enabled: {config.RATE_LIMIT_PER_MINUTE} requests per minute")
        app.add_middleware(RateLimitMiddleware, limit_per_minute=config.RATE_LIMIT_PER_MINUTE)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(tasks.router, prefix=config.API_PREFIX)
    app.include_router(logs.router, prefix=config.API_PREFIX)
    app.include_router(health.router)

    return app


app = create_app()


# ============== Startup / Shutdown ==============

@app.on_event("startup")
def prepare_stores():
    """
    Create tables outside production-like environments and ensure log indexes.

    Production schemas are managed outside the application.
    """
    logger.info(f"Starting {config.APP_NAME} {config.APP_VERSION} ({config.ENVIRONMENT})")
    if not config.is_production_like():
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("Database tables ensured")
        except Exception as e:
            logger.error(f"Could not create database tables: {e}")
    document_store.ensure_indexes(document_store.get_log_collection())


@app.on_event("shutdown")
def close_stores():
    document_store.close_client()
    engine.dispose()
    logger.info("Stores closed")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )
