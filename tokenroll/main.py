"""tokenroll FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokenroll import config
from tokenroll.db import connection
from tokenroll.engine import UsageEngine
from tokenroll.observability import initialize as initialize_observability, shutdown as shutdown_observability
from tokenroll.routers.usage import usage_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("tokenroll")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("tokenroll starting up (db=%s backend=%s)", config.DB_PATH, config.DB_BACKEND)
    initialize_observability(app)

    engine = await UsageEngine.build()
    app.state.usage_engine = engine
    await engine.start()

    yield

    logger.info("tokenroll shutting down")
    await engine.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="tokenroll API",
    description="Token usage aggregation for agent session logs",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(usage_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    engine = getattr(app.state, "usage_engine", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "scheduler": engine.scheduler.state if engine else "stopped",
        "watcher": "running" if engine and engine.watcher.is_running else "stopped",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("tokenroll.main:app", host=config.HOST, port=config.PORT)
