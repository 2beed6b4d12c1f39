"""
Browser provisioning API endpoints.
"""
from contextlib import aclosing
from datetime import datetime
from typing import AsyncIterator, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..logging_config import get_logger
from ..runs.api import render_chunk
from .models import EngineKind, InstallationRecord
from .provisioner import BrowserProvisioner

logger = get_logger("scenario_runner.browser.api")

router = APIRouter(tags=["browser"])


def _engine_or_400(engine: Optional[str], default: EngineKind) -> EngineKind:
    try:
        return EngineKind.parse(engine or default)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


async def stream_install(provisioner: BrowserProvisioner, engine: EngineKind) -> AsyncIterator[str]:
    title = f"Installing Playwright {engine.value}"
    yield f"{title}\n{'=' * len(title)}\n\n"

    record: Optional[InstallationRecord] = None
    async with aclosing(provisioner.stream_install(engine)) as items:
        async for item in items:
            if isinstance(item, InstallationRecord):
                record = item
            else:
                yield render_chunk(item)

    if record.succeeded:
        headline = "Browser installation completed successfully."
    else:
        headline = f"Browser installation failed ({record.outcome.value})."
    exit_code = record.exit_code if record.exit_code is not None else "n/a"
    yield (
        f"\n\n{headline}\n"
        f"Completed at: {datetime.now().isoformat(timespec='seconds')}\n"
        f"Result: {'PASS' if record.succeeded else 'FAIL'} (exit code {exit_code})\n"
    )


@router.post("/install-browsers")
async def install_browsers(request: Request, engine: Optional[str] = None):
    """Install a browser engine and stream the installer output."""
    state = request.app.state
    kind = _engine_or_400(engine, state.config.engine)
    logger.info(f"Browser installation requested for {kind.value}")
    return StreamingResponse(
        stream_install(state.provisioner, kind),
        media_type="text/plain; charset=utf-8",
    )


@router.get("/api/browser/engines")
async def list_engines(request: Request):
    config = request.app.state.config
    return {
        "engines": [e.value for e in EngineKind],
        "default": config.engine.value,
        "headless": config.headless,
        "browsers_path": str(config.browsers_path) if config.browsers_path else None,
    }


@router.post("/api/browser/check")
async def check_engine(request: Request, engine: Optional[str] = None):
    """Trial-launch an engine without installing anything."""
    state = request.app.state
    kind = _engine_or_400(engine, state.config.engine)
    available = await state.provisioner.probe(kind)
    return {"engine": kind.value, "available": available}
