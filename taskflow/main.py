"""
Taskflow FastAPI application.

Entry point for the API server. The lifespan opens the configured store,
starts the data facade and tears both down on shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from taskflow import __version__
from taskflow.config import settings
from taskflow.repos.factory import open_store
from taskflow.routes import chat as chat_routes
from taskflow.routes import replica as replica_routes
from taskflow.routes import tasks as task_routes
from taskflow.services.data_facade import DataFacade

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: open the store, start the facade (snapshot + feed per family).
    Shutdown: close the facade, then the store.
    """
    async with open_store() as (store, feed):
        facade = DataFacade(store, feed)
        await facade.start()
        app.state.store = store
        app.state.facade = facade
        logger.info("app: replica ready environment=%s", settings.ENVIRONMENT)

        yield

        await facade.close()
        app.state.facade = None
        logger.info("app: replica closed")


app = FastAPI(
    title="Taskflow",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(task_routes.router)
app.include_router(chat_routes.router)
app.include_router(replica_routes.router)


@app.get("/health")
async def health():
    """Health check endpoint for uptime monitoring."""
    facade = getattr(app.state, "facade", None)
    return {"status": "ok", "loading": facade.loading if facade is not None else True}
