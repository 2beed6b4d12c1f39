import asyncio
import importlib.util
import os
import platform
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse

from . import __version__
from .browser.api import router as browser_router
from .browser.provisioner import BrowserProvisioner
from .config import RunnerConfig
from .logging_config import get_logger, setup_logging
from .runs.api import router as runs_router
from .runs.orchestrator import ProcessRunOrchestrator

logger = get_logger("scenario_runner.server")

ENDPOINTS = [
    "GET /",
    "GET /info",
    "GET /health",
    "GET /health?test_browser=true",
    "GET /test-results",
    "GET /logs/{filename}",
    "GET /api/runs",
    "GET /api/runs/{run_id}",
    "POST /api/runs/{run_id}/cancel",
    "GET /api/browser/engines",
    "POST /api/browser/check",
    "POST /install-browsers",
    "POST /run-tests",
    "WS /ws",
]


# Seconds a subscriber gets to accept one message before it is dropped
SEND_TIMEOUT = 2.0


class ConnectionManager:
    def __init__(self, send_timeout: float = SEND_TIMEOUT):
        self.active_connections: Set[WebSocket] = set()
        self.send_timeout = send_timeout

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def _send(self, connection: WebSocket, message: dict):
        await asyncio.wait_for(connection.send_json(message), timeout=self.send_timeout)

    async def broadcast(self, message: dict):
        connections = list(self.active_connections)
        results = await asyncio.gather(
            *(self._send(conn, message) for conn in connections), return_exceptions=True
        )
        for conn, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.debug(f"Dropping websocket after send error: {result!r}")
                self.active_connections.discard(conn)


def _list_files(directory: Path) -> List[dict]:
    if not directory.is_dir():
        return []
    files = []
    for path in sorted(p for p in directory.rglob("*") if p.is_file()):
        stat = path.stat()
        files.append({
            "name": str(path.relative_to(directory)),
            "size": stat.st_size,
            "modified_at": datetime.fromtimestamp(stat.st_mtime).isoformat(),
        })
    return files


def create_app(config: Optional[RunnerConfig] = None) -> FastAPI:
    config = config or RunnerConfig.from_env()
    config.ensure_directories()

    app = FastAPI(title="Scenario Runner", version=__version__)
    app.state.config = config
    app.state.orchestrator = ProcessRunOrchestrator(kill_grace=config.kill_grace)
    app.state.provisioner = BrowserProvisioner(config, orchestrator=app.state.orchestrator)
    app.state.ws_manager = ConnectionManager()

    app.include_router(runs_router)
    app.include_router(browser_router)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Kill runs that are still streaming"""
        for process_run in app.state.orchestrator.active_runs():
            if process_run.cancel():
                logger.info(f"Cancelled run {process_run.id} on shutdown")

    @app.get("/")
    async def index():
        return {
            "service": "Scenario Runner",
            "version": __version__,
            "status": "running",
            "timestamp": datetime.now().isoformat(),
            "endpoints": ENDPOINTS,
        }

    @app.get("/info")
    async def info(request: Request):
        return {
            "message": "Scenario Runner test server",
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "available_endpoints": ENDPOINTS,
            "config": request.app.state.config.to_dict(),
        }

    @app.get("/health")
    async def health_check(request: Request, test_browser: bool = False):
        state = request.app.state
        playwright_installed = importlib.util.find_spec("playwright") is not None
        health = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "python_version": platform.python_version(),
            "environment": os.environ.get("ENVIRONMENT", "development"),
            "active_runs": len(state.orchestrator.active_runs()),
            "websocket_connections": len(state.ws_manager.active_connections),
            "playwright": {
                "installed": playwright_installed,
                "engine": state.config.engine.value,
            },
        }
        if not playwright_installed:
            health["status"] = "warning"
            health["playwright"]["error"] = "Playwright not installed"
        elif test_browser:
            passed = await state.provisioner.probe(state.config.engine)
            health["playwright"]["browser_test"] = "passed" if passed else "failed"
            if not passed:
                health["status"] = "warning"
        return health

    @app.get("/test-results")
    async def test_results(request: Request):
        config = request.app.state.config
        return {
            "results_dir": str(config.results_dir),
            "results": _list_files(config.results_dir),
            "logs_dir": str(config.logs_dir),
            "logs": _list_files(config.logs_dir),
        }

    @app.get("/logs/{filename}")
    async def get_log_file(filename: str, request: Request):
        logs_dir = request.app.state.config.logs_dir.resolve()
        log_path = (logs_dir / filename).resolve()
        if log_path.parent != logs_dir or not log_path.is_file():
            raise HTTPException(status_code=404, detail="Log file not found")
        return FileResponse(log_path, media_type="text/plain; charset=utf-8")

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        ws_manager = websocket.app.state.ws_manager
        await ws_manager.connect(websocket)

        await websocket.send_json({
            "type": "init",
            "runs": [r.to_dict() for r in websocket.app.state.orchestrator.active_runs()],
        })

        try:
            while True:
                try:
                    data = await websocket.receive_json()
                except ValueError:
                    continue
                if isinstance(data, dict) and data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
        finally:
            ws_manager.disconnect(websocket)

    return app


def run_server(host: str = "127.0.0.1", port: int = 8080, config: Optional[RunnerConfig] = None):
    """
    Run the HTTP trigger surface.

    Args:
        host: Bind address. Default is 127.0.0.1 (localhost only).
        port: Port to listen on (default: 8080)
    """
    import uvicorn

    setup_logging()
    app = create_app(config)
    logger.info(f"Scenario Runner listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)
