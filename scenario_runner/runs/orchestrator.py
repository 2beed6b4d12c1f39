"""
ProcessRunOrchestrator - runs external commands and streams their output.

Each run owns its subprocess, its reader tasks and its output queue, so any
number of runs can execute concurrently in one event loop.
"""
import asyncio
import codecs
import time
from contextlib import aclosing
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from ..errors import ProcessSpawnError, ProcessTimeout
from ..logging_config import get_logger
from .models import (
    CANCEL,
    OutputChunk,
    ProcessRun,
    RunItem,
    RunResult,
    RunStatus,
    StreamName,
    TerminalStatus,
)
from .process import build_env, spawn, terminate_tree

logger = get_logger("scenario_runner.runs")

# End-of-stream marker pushed by a reader when its pipe closes
EOF = None


class ProcessRunOrchestrator:
    """Spawns commands, delivers tagged output chunks in arrival order, resolves a terminal status."""

    def __init__(self, kill_grace: float = 5.0, chunk_size: int = 4096):
        self.kill_grace = kill_grace
        self.chunk_size = chunk_size
        self._active: Dict[str, ProcessRun] = {}

    def active_runs(self) -> List[ProcessRun]:
        """Runs currently executing, oldest first."""
        return list(self._active.values())

    def get_run(self, run_id: str) -> Optional[ProcessRun]:
        return self._active.get(run_id)

    def cancel(self, run_id: str) -> bool:
        """Kill an executing run. False if it is unknown or already finishing."""
        process_run = self._active.get(run_id)
        if process_run is None:
            return False
        return process_run.cancel()

    def create_run(
        self,
        command: str,
        args: Iterable[str] = (),
        env_overlay: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> ProcessRun:
        return ProcessRun(
            command=command,
            args=[str(a) for a in args],
            env_overlay=dict(env_overlay or {}),
            cwd=cwd,
            timeout=timeout,
            idle_timeout=idle_timeout,
        )

    async def run(
        self,
        command: str,
        args: Iterable[str] = (),
        env_overlay: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> AsyncIterator[RunItem]:
        """Run a command, yielding OutputChunks and finally one TerminalStatus."""
        process_run = self.create_run(command, args, env_overlay, timeout, idle_timeout, cwd)
        async with aclosing(self.execute(process_run)) as items:
            async for item in items:
                yield item

    async def collect(
        self,
        command: str,
        args: Iterable[str] = (),
        env_overlay: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        idle_timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> RunResult:
        chunks: List[OutputChunk] = []
        status = None
        async for item in self.run(command, args, env_overlay, timeout, idle_timeout, cwd):
            if isinstance(item, OutputChunk):
                chunks.append(item)
            else:
                status = item
        return RunResult(chunks=chunks, status=status)

    async def execute(self, process_run: ProcessRun) -> AsyncIterator[RunItem]:
        """
        Execute a prepared run.

        Never raises for spawn failures or timeouts; those resolve as a
        TerminalStatus so the consumer keeps whatever output was produced.
        If the consumer stops iterating early the child is killed.
        """
        if process_run.status != RunStatus.PENDING:
            raise RuntimeError(f"Run {process_run.id} has already been executed")

        start = time.monotonic()
        process_run.status = RunStatus.RUNNING
        process_run.started_at = datetime.now().isoformat()
        queue = process_run._queue
        self._active[process_run.id] = process_run

        if process_run.cancel_requested:
            yield self._finish(process_run, start, RunStatus.ERROR, error="cancelled")
            return

        try:
            proc = await spawn(
                process_run.argv,
                env=build_env(process_run.env_overlay),
                cwd=process_run.cwd,
            )
        except ProcessSpawnError as e:
            logger.warning_with("Run failed to start", run_id=process_run.id, error=str(e))
            yield self._finish(process_run, start, RunStatus.ERROR, error=str(e))
            return

        logger.info_with(
            "Run started", run_id=process_run.id, pid=proc.pid, command=process_run.display_command
        )
        readers = [
            asyncio.create_task(self._pump(proc.stdout, StreamName.STDOUT, queue)),
            asyncio.create_task(self._pump(proc.stderr, StreamName.STDERR, queue)),
        ]
        deadline = start + process_run.timeout if process_run.timeout else None
        open_streams = len(readers)
        interrupted: Optional[Tuple[RunStatus, str]] = None

        try:
            while open_streams:
                wait = self._next_wait(deadline, process_run.idle_timeout)
                try:
                    stream, data = await asyncio.wait_for(queue.get(), timeout=wait)
                except asyncio.TimeoutError:
                    interrupted = (RunStatus.TIMEOUT, str(self._timeout_error(process_run, deadline)))
                    break
                if data is CANCEL:
                    interrupted = (RunStatus.ERROR, "cancelled")
                    break
                if data is EOF:
                    open_streams -= 1
                    continue
                process_run.chunk_count += 1
                yield OutputChunk(stream=stream, data=data, seq=process_run.chunk_count)

            if interrupted is None:
                interrupted = await self._wait_exit(proc, process_run, deadline)

            if interrupted is not None:
                status, error = interrupted
                logger.warning_with("Killing run", run_id=process_run.id, reason=error)
                await terminate_tree(proc, self.kill_grace)
                yield self._finish(process_run, start, status, exit_code=proc.returncode, error=error)
                return

            exit_code = proc.returncode
            outcome = RunStatus.SUCCESS if exit_code == 0 else RunStatus.FAILURE
            yield self._finish(process_run, start, outcome, exit_code=exit_code)
        finally:
            if proc.returncode is None:
                await terminate_tree(proc, self.kill_grace)
            for reader in readers:
                reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            if not process_run.status.is_terminal:
                self._finish(process_run, start, RunStatus.ERROR, exit_code=proc.returncode,
                             error="consumer stopped before completion")

    async def _wait_exit(
        self, proc: asyncio.subprocess.Process, process_run: ProcessRun, deadline: Optional[float]
    ) -> Optional[Tuple[RunStatus, str]]:
        """
        Wait for the child to exit after both pipes closed.

        The queue is still watched so a cancellation reaches children that
        closed their output but keep running.
        """
        exited = asyncio.ensure_future(proc.wait())
        try:
            while True:
                marker = asyncio.ensure_future(process_run._queue.get())
                try:
                    done, _ = await asyncio.wait(
                        {exited, marker},
                        timeout=self._remaining(deadline),
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    if not marker.done():
                        marker.cancel()
                if exited in done:
                    return None
                if not done:
                    return RunStatus.TIMEOUT, str(self._timeout_error(process_run, deadline))
                if marker.result()[1] is CANCEL:
                    return RunStatus.ERROR, "cancelled"
        finally:
            if not exited.done():
                exited.cancel()

    async def _pump(self, stream: asyncio.StreamReader, name: StreamName, queue: asyncio.Queue):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await stream.read(self.chunk_size)
                if not data:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        await queue.put((name, tail))
                    break
                text = decoder.decode(data)
                if text:
                    await queue.put((name, text))
        finally:
            queue.put_nowait((name, EOF))

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def _next_wait(self, deadline: Optional[float], idle_timeout: Optional[float]) -> Optional[float]:
        candidates = [t for t in (self._remaining(deadline), idle_timeout) if t is not None]
        return min(candidates) if candidates else None

    @staticmethod
    def _timeout_error(process_run: ProcessRun, deadline: Optional[float]) -> ProcessTimeout:
        if deadline is not None and (process_run.idle_timeout is None or time.monotonic() >= deadline):
            return ProcessTimeout(process_run.command, process_run.timeout)
        return ProcessTimeout(process_run.command, process_run.idle_timeout, idle=True)

    def _finish(
        self,
        process_run: ProcessRun,
        start: float,
        status: RunStatus,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> TerminalStatus:
        process_run.status = status
        process_run.exit_code = exit_code
        process_run.error = error
        process_run.finished_at = datetime.now().isoformat()
        self._active.pop(process_run.id, None)
        terminal = TerminalStatus(
            status=status,
            exit_code=exit_code,
            error=error,
            duration_seconds=time.monotonic() - start,
        )
        logger.info_with("Run finished", run_id=process_run.id, **terminal.to_dict())
        return terminal
