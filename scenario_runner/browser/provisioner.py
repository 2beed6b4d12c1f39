"""
BrowserProvisioner - makes sure a Playwright browser engine can be launched.

A trial launch decides whether anything needs to happen. Installation runs
the Playwright installer as a subprocess under a hard wall-clock bound, one
install per engine kind at a time across the whole process.
"""
import asyncio
import time
import weakref
from contextlib import aclosing
from typing import AsyncIterator, Callable, Dict, Optional, Union

from ..config import RunnerConfig
from ..logging_config import get_logger
from ..runs.models import OutputChunk, RunStatus, TerminalStatus
from ..runs.orchestrator import ProcessRunOrchestrator
from .models import EngineKind, InstallationRecord, InstallOutcome

logger = get_logger("scenario_runner.browser.provisioner")

# Locks are per event loop because asyncio primitives cannot be shared across loops
_install_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[EngineKind, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)

TAIL_LINES = 20


def install_lock(engine: EngineKind) -> asyncio.Lock:
    """The process-wide install lock for an engine kind."""
    loop = asyncio.get_running_loop()
    locks = _install_locks.setdefault(loop, {})
    if engine not in locks:
        locks[engine] = asyncio.Lock()
    return locks[engine]


def _default_playwright_factory():
    from playwright.async_api import async_playwright
    return async_playwright()


class BrowserProvisioner:
    """Ensures requested browser engines are installed and launchable."""

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        orchestrator: Optional[ProcessRunOrchestrator] = None,
        playwright_factory: Optional[Callable] = None,
    ):
        self.config = config or RunnerConfig()
        self.orchestrator = orchestrator or ProcessRunOrchestrator(kill_grace=self.config.kill_grace)
        self._playwright_factory = playwright_factory or _default_playwright_factory

    async def probe(self, engine: Union[str, EngineKind, None] = None) -> bool:
        """Launch and immediately close the engine. True if that worked within probe_timeout."""
        engine = EngineKind.parse(engine or self.config.engine)
        try:
            await asyncio.wait_for(self._trial_launch(engine), timeout=self.config.probe_timeout)
            logger.debug(f"Trial launch of {engine.value} succeeded")
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Trial launch of {engine.value} timed out after {self.config.probe_timeout:g}s")
        except Exception as e:
            logger.info(f"Trial launch of {engine.value} failed: {e}")
        return False

    async def _trial_launch(self, engine: EngineKind):
        with self.config.driver_environment():
            playwright = await self._playwright_factory().start()
        try:
            browser = await getattr(playwright, engine.value).launch(headless=True)
            await browser.close()
        finally:
            await playwright.stop()

    async def ensure_available(self, engine: Union[str, EngineKind, None] = None) -> bool:
        """
        Make sure ``engine`` can be launched, installing it when it cannot.

        Returns False when installation failed or timed out. That is not fatal
        here; the caller's real launch will fail with a clearer error.
        """
        engine = EngineKind.parse(engine or self.config.engine)
        if await self.probe(engine):
            return True
        record = await self.install(engine)
        return record.succeeded

    async def install(self, engine: Union[str, EngineKind, None] = None) -> InstallationRecord:
        record = None
        async for item in self.stream_install(engine):
            if isinstance(item, InstallationRecord):
                record = item
        return record

    async def stream_install(
        self, engine: Union[str, EngineKind, None] = None
    ) -> AsyncIterator[Union[OutputChunk, InstallationRecord]]:
        """
        Install an engine, yielding installer output and finally an InstallationRecord.

        The fallback installer only runs when the primary one could not be
        started at all, so the two never both write to the install directory.
        """
        engine = EngineKind.parse(engine or self.config.engine)
        lock = install_lock(engine)
        waited = lock.locked()
        async with lock:
            start = time.monotonic()
            if waited and await self.probe(engine):
                logger.info(f"{engine.value} was installed while waiting for the install lock")
                yield InstallationRecord(engine=engine, outcome=InstallOutcome.ALREADY_AVAILABLE)
                return

            spawn_errors = []
            for argv in self.config.install_argvs(engine):
                logger.info_with("Installing browser engine", engine=engine.value, command=" ".join(argv))
                output = []
                status: Optional[TerminalStatus] = None
                items = self.orchestrator.run(
                    argv[0],
                    argv[1:],
                    env_overlay=self.config.install_env(),
                    timeout=self.config.install_timeout,
                )
                async with aclosing(items):
                    async for item in items:
                        if isinstance(item, OutputChunk):
                            output.append(item.data)
                            yield item
                        else:
                            status = item

                if status.status == RunStatus.ERROR and status.exit_code is None:
                    # Never started; nothing was written, so the next installer is safe to try
                    spawn_errors.append(status.error)
                    logger.warning(f"Installer unavailable: {status.error}")
                    continue

                yield self._record(engine, argv, status, "".join(output), start)
                return

            yield InstallationRecord(
                engine=engine,
                outcome=InstallOutcome.FAILURE,
                elapsed_seconds=time.monotonic() - start,
                output_tail="\n".join(spawn_errors),
            )

    @staticmethod
    def _record(engine, argv, status: TerminalStatus, output: str, start: float) -> InstallationRecord:
        if status.success:
            outcome = InstallOutcome.SUCCESS
        elif status.timed_out:
            outcome = InstallOutcome.TIMEOUT
        else:
            outcome = InstallOutcome.FAILURE
        tail = "\n".join(output.splitlines()[-TAIL_LINES:])
        if status.error:
            tail = f"{tail}\n{status.error}".strip()
        record = InstallationRecord(
            engine=engine,
            outcome=outcome,
            elapsed_seconds=time.monotonic() - start,
            command=list(argv),
            exit_code=status.exit_code,
            output_tail=tail,
        )
        if record.succeeded:
            logger.info(f"Installed {engine.value} in {record.elapsed_seconds:.1f}s")
        else:
            logger.error_with("Browser install failed", **record.to_dict())
        return record
