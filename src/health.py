"""
Health probes - Liveness and readiness endpoints for the operator.

Serves GET /healthz and GET /readyz with FastAPI on uvicorn alongside the
controller.
"""

import logging
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, HTTPException

logger = logging.getLogger(__name__)

ReadyCheck = Callable[[], bool]


def create_app(ready_check: ReadyCheck) -> FastAPI:
    """
    Build the probe application.

    Args:
        ready_check: Returns True once the controller is serving requests

    Returns:
        FastAPI app exposing /healthz and /readyz
    """
    app = FastAPI(
        title="ROSA Control Plane Operator",
        description="Health probes for the ROSA control plane operator",
        version="1.0.0",
    )

    @app.get("/healthz")
    async def healthz():
        """Liveness probe."""
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        """Readiness probe."""
        if not ready_check():
            raise HTTPException(status_code=503, detail="controller not ready")
        return {"status": "ok"}

    return app


class HealthServer:
    """Runs the probe application on uvicorn."""

    def __init__(
        self,
        ready_check: ReadyCheck,
        host: str = "0.0.0.0",
        port: int = 8081,
        log_level: str = "info",
    ):
        self.app = create_app(ready_check)
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Serve until stop() is called."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting health probes on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the server gracefully."""
        logger.info("Stopping health probes")
        if self.server:
            self.server.should_exit = True
