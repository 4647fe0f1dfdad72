import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from svnmigrate import __version__
from svnmigrate.container import get_container
from svnmigrate.core.logging_config import setup_logging
from svnmigrate.exception_handlers import register_exception_handlers
from svnmigrate.services.event_relay import BroadcastEventSink, RedisEventForwarder
from svnmigrate.services.queue.factory import BACKEND_CELERY

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the container and the live event relay for this process."""
    container = get_container()
    forwarder = None

    if container.queue_backend == BACKEND_CELERY:
        forwarder = RedisEventForwarder(container.settings.redis_url)
        logger.info("Starting Redis event forwarder...")
        await forwarder.start()
    elif isinstance(container.events, BroadcastEventSink):
        container.events.attach(asyncio.get_running_loop())

    yield

    if forwarder is not None:
        logger.info("Stopping Redis event forwarder...")
        await forwarder.stop()
    if isinstance(container.events, BroadcastEventSink):
        container.events.detach()
    container.close()


app = FastAPI(
    title="SVN to GitLab Migration API",
    description="Migrates Subversion repositories into GitLab and keeps them in sync",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Adjust this for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

from svnmigrate.api.routers import health as queue_health
from svnmigrate.api.routers import migrations, queue, websocket
app.include_router(migrations.router, prefix="/api")
app.include_router(queue.router, prefix="/api")
app.include_router(queue_health.router, prefix="/api")
app.include_router(websocket.router, prefix="/api")


@app.get("/health")
async def health_check():
    """Root health check endpoint."""
    return {"status": "healthy"}


@app.get("/api/health")
async def api_health_check():
    return {"status": "healthy", "service": "svn-migration-api"}
