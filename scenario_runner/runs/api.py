"""
Test-run API endpoints.
"""
from contextlib import aclosing
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List, Optional

import aiofiles
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..logging_config import get_logger
from .models import OutputChunk, ProcessRun, RunStatus, StreamName, TerminalStatus

logger = get_logger("scenario_runner.runs.api")

router = APIRouter(tags=["runs"])

# Environment every remotely triggered run gets
RUN_ENV = {"HEADLESS": "true", "CI": "true", "LOG_LEVEL": "info"}


class RunTestsRequest(BaseModel):
    """Extra arguments for the configured test command. The environment is fixed server-side."""
    model_config = ConfigDict(extra="forbid")

    args: List[str] = Field(default_factory=list, max_length=50)
    timeout: Optional[float] = Field(None, gt=0, le=24 * 3600)


def render_chunk(chunk: OutputChunk) -> str:
    if chunk.stream == StreamName.STDERR:
        return "".join(f"[stderr] {line}" for line in chunk.data.splitlines(keepends=True))
    return chunk.data


def render_summary(status: TerminalStatus) -> str:
    if status.success:
        headline = "Tests completed successfully."
    elif status.status == RunStatus.ERROR:
        headline = f"Error running tests: {status.error}"
    elif status.timed_out:
        headline = f"Test run aborted: {status.error}"
    else:
        headline = "Tests completed with failures."
    return (
        f"\n\n{headline}\n"
        f"Completed at: {datetime.now().isoformat(timespec='seconds')}\n"
        f"Duration: {status.duration_seconds:.1f}s\n"
        f"{status.summary_line()}\n"
    )


class Transcript:
    """Run transcript in the logs directory. Write errors disable it instead of failing the run."""

    def __init__(self, path: Path):
        self.path = path
        self._fh = None

    async def open(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = await aiofiles.open(self.path, "w", encoding="utf-8")
        except OSError as e:
            self._disable(e)

    async def write(self, text: str):
        if self._fh is None:
            return
        try:
            await self._fh.write(text)
        except OSError as e:
            await self.close()
            self._disable(e)

    async def close(self):
        fh, self._fh = self._fh, None
        if fh is not None:
            try:
                await fh.close()
            except OSError as e:
                self._disable(e)

    def _disable(self, error: OSError):
        self._fh = None
        logger.warning_with("Transcript disabled", path=str(self.path), error=str(error))


async def stream_run(state, process_run: ProcessRun, title: str) -> AsyncIterator[str]:
    """
    Execute ``process_run`` and render it as a plain-text stream.

    Output is mirrored to a transcript in the logs directory and broadcast
    to WebSocket subscribers. The stream always ends with a summary block.
    """
    header = (
        f"{title}\n{'=' * len(title)}\n\n"
        f"Run id: {process_run.id}\n"
        f"Started at: {datetime.now().isoformat(timespec='seconds')}\n"
        f"Command: {process_run.display_command}\n\n"
    )
    transcript = Transcript(state.config.logs_dir / f"run-{process_run.id}.log")
    ws_manager = state.ws_manager

    await transcript.open()
    try:
        await transcript.write(header)
        yield header
        await ws_manager.broadcast({"type": "status", "run": process_run.to_dict()})

        status = None
        async with aclosing(state.orchestrator.execute(process_run)) as items:
            async for item in items:
                if isinstance(item, TerminalStatus):
                    status = item
                    continue
                text = render_chunk(item)
                await transcript.write(text)
                await ws_manager.broadcast({
                    "type": "output",
                    "run_id": process_run.id,
                    **item.to_dict(),
                })
                yield text

        summary = render_summary(status)
        await transcript.write(summary)
    finally:
        await transcript.close()
    await ws_manager.broadcast({"type": "status", "run": process_run.to_dict()})
    yield summary


@router.post("/run-tests")
async def run_tests(request: Request, body: Optional[RunTestsRequest] = None):
    """Start the configured test command and stream its output."""
    body = body or RunTestsRequest()
    state = request.app.state
    config = state.config
    command = config.test_command
    process_run = state.orchestrator.create_run(
        command[0],
        [*command[1:], *body.args],
        env_overlay=RUN_ENV,
        timeout=body.timeout or config.run_timeout,
        idle_timeout=config.run_idle_timeout,
    )
    logger.info_with("Test run requested", run_id=process_run.id, command=process_run.display_command)
    return StreamingResponse(
        stream_run(state, process_run, "Test Execution"),
        media_type="text/plain; charset=utf-8",
        headers={"X-Run-Id": process_run.id},
    )


@router.get("/api/runs")
async def list_runs(request: Request):
    runs = request.app.state.orchestrator.active_runs()
    return {"runs": [r.to_dict() for r in runs], "count": len(runs)}


@router.get("/api/runs/{run_id}")
async def get_run(run_id: str, request: Request):
    process_run = request.app.state.orchestrator.get_run(run_id)
    if not process_run:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"run": process_run.to_dict()}


@router.post("/api/runs/{run_id}/cancel")
async def cancel_run(run_id: str, request: Request):
    orchestrator = request.app.state.orchestrator
    process_run = orchestrator.get_run(run_id)
    if not process_run:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"success": orchestrator.cancel(run_id), "run": process_run.to_dict()}
