import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api_routers.v1 import api_router
from app.features.health.routes.health import router as health_router
from app.features.scan.services.queue.scan_queue import ScanQueueClient
from app.features.scan.services.scan.orchestrator import ScanOrchestrator
from app.features.scan.services.validation.w3c_client import W3CValidatorClient
from app.features.scan.workers.tasks import process_scan_job
from app.platform.celery_app import celery_app
from app.platform.config import settings
from app.platform.db.session import SessionLocal, init_db
from app.platform.exceptions import add_exception_handlers

# Configure logging to show INFO level messages
logging.basicConfig(
    level=settings.LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.ENVIRONMENT in ("local", "test"):
        init_db()

    queue = ScanQueueClient(celery_app, SessionLocal, task=process_scan_job).open()
    orchestrator = ScanOrchestrator.from_settings(queue)
    app.state.scan_orchestrator = orchestrator
    app.state.validator_client = W3CValidatorClient()
    logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")

    try:
        yield
    finally:
        orchestrator.resolver.close()
        orchestrator.batch_validator.client.close()
        app.state.validator_client.close()
        queue.close()
        logger.info(f"{settings.APP_NAME} stopped")


app = FastAPI(
    title="Sitemap Checker API",
    description="Validate every page of a sitemap against the W3C HTML checker",
    version="1.0.0",
    lifespan=lifespan,
)


# Root endpoint for basic info
@app.get("/", tags=["Info"])
def root():
    return {
        "app_name": settings.APP_NAME,
        "description": "Sitemap scanning and W3C markup validation, paid per URL in credits.",
        "version": "1.0.0",
        "docs_url": "/docs",
        "api_base": "/api/v1",
    }


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

add_exception_handlers(app)

app.include_router(health_router)
app.include_router(api_router, prefix="/api/v1")
