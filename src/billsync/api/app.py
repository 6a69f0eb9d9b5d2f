"""
Operations HTTP API for billsync.

Runs the sync loop in a background thread and exposes health, status and a
manual trigger.
"""

import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..connectors import CONNECTOR_REGISTRY
from ..core.bootstrap import SyncRuntime
from ..core.config import SyncSettings
from ..exceptions import PersistenceError

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 30


def _runtime_from_env() -> SyncRuntime:
    return SyncRuntime.from_settings(SyncSettings.from_env())


def create_app(runtime_factory: Callable[[], SyncRuntime] = _runtime_from_env, start_loop: bool = True) -> FastAPI:
    """
    Build the API application.

    Args:
        runtime_factory: Builds the sync runtime at startup
        start_loop: Run the sync loop in a background thread
    """
    state = {"runtime": None, "thread": None}

    def _run_loop(runtime: SyncRuntime) -> None:
        try:
            runtime.coordinator.run_forever()
        except PersistenceError as e:
            logger.error(f"Sync loop halted: {e}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        runtime = runtime_factory()
        state["runtime"] = runtime

        if start_loop:
            thread = threading.Thread(target=_run_loop, args=(runtime,), name="billsync-sync", daemon=True)
            thread.start()
            state["thread"] = thread
        logger.info("Application startup complete")

        yield

        logger.info("Application shutdown")
        runtime.coordinator.stop()
        if state["thread"] is not None:
            state["thread"].join(timeout=SHUTDOWN_TIMEOUT_SECONDS)
        runtime.close()

    app = FastAPI(
        title="billsync",
        description="Incremental sync of billing records to the time-tracking service",
        version=__version__,
        lifespan=lifespan
    )

    allowed_origins_str = os.getenv("ALLOWED_ORIGINS", "")
    allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",") if origin.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Dependency injection
    def get_runtime() -> SyncRuntime:
        if state["runtime"] is None:
            raise HTTPException(status_code=500, detail="Sync runtime not initialized")
        return state["runtime"]

    def loop_running() -> bool:
        thread: Optional[threading.Thread] = state["thread"]
        return thread is not None and thread.is_alive()

    @app.get("/health")
    def health_check(runtime: SyncRuntime = Depends(get_runtime)):
        """Check the source, the target and the coordinator."""
        checks = {
            "source": runtime.source.test_connection(),
            "target": runtime.target.test_connection(),
            "coordinator": not runtime.coordinator.halted,
        }
        if start_loop:
            checks["sync_loop"] = loop_running()

        healthy = all(checks.values())
        body = {"status": "healthy" if healthy else "unhealthy", "checks": checks}
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    @app.get("/status")
    def get_status(runtime: SyncRuntime = Depends(get_runtime)):
        """Current state, watermark and last cycle."""
        status = runtime.coordinator.status()
        status["sync_loop_running"] = loop_running()
        return status

    @app.post("/sync")
    def trigger_sync(runtime: SyncRuntime = Depends(get_runtime)):
        """Run a cycle now: wakes the loop, or runs one inline when no loop is running."""
        coordinator = runtime.coordinator
        if coordinator.halted:
            raise HTTPException(status_code=503, detail=f"Coordinator is halted: {coordinator.fatal_error}")

        if loop_running():
            if coordinator.trigger():
                return JSONResponse(status_code=202, content={"status": "triggered"})
            return JSONResponse(
                status_code=409,
                content={"status": "backoff", "retry_after_seconds": coordinator.next_delay},
            )

        try:
            result = coordinator.run_cycle(triggered_by="api")
        except PersistenceError as e:
            raise HTTPException(status_code=503, detail=f"Watermark persistence failed: {e}")
        return result.get_summary()

    @app.get("/api/v1/connectors")
    def list_connectors():
        """List available connectors."""
        return {
            "connectors": list(CONNECTOR_REGISTRY.keys()),
            "details": {
                name: {
                    "class": connector_class.__name__,
                    "module": connector_class.__module__
                }
                for name, connector_class in CONNECTOR_REGISTRY.items()
            }
        }

    return app


app = create_app()
