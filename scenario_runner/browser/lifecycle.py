"""
SessionLifecycleManager - provisions, hands out and tears down scenario sessions.

State machine per session:

    uninitialized -> provisioning -> ready -> in_use -> tearing_down -> closed

Provisioning re-enters itself once when the engine is missing and has to be
installed. Any provisioning error closes the session and raises
ProvisioningFailed. Teardown runs on every exit path and is idempotent.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from ..config import RunnerConfig
from ..errors import ProvisioningFailed, SessionStateError
from ..logging_config import get_logger
from .models import EngineKind, EvidenceRecord, SessionOptions, SessionState
from .provisioner import BrowserProvisioner, _default_playwright_factory
from .session import ScenarioSession

logger = get_logger("scenario_runner.browser.lifecycle")

# Flags that keep Chromium usable inside containers
CHROMIUM_ARGS = ["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]


class SessionLifecycleManager:
    """Owns the sessions of the scenarios it starts. Sessions never outlive their scenario."""

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        provisioner: Optional[BrowserProvisioner] = None,
        playwright_factory: Optional[Callable] = None,
    ):
        self.config = config or RunnerConfig()
        self._playwright_factory = playwright_factory or _default_playwright_factory
        self.provisioner = provisioner or BrowserProvisioner(
            self.config, playwright_factory=self._playwright_factory
        )
        self.sessions: Dict[str, ScenarioSession] = {}
        self._playwright = None
        self._driver_lock: Optional[asyncio.Lock] = None

    async def _ensure_playwright(self):
        """Lazy-start the Playwright driver on first use."""
        if self._playwright is not None:
            return self._playwright
        if self._driver_lock is None:
            self._driver_lock = asyncio.Lock()
        async with self._driver_lock:
            if self._playwright is None:
                with self.config.driver_environment():
                    self._playwright = await self._playwright_factory().start()
                logger.info("Playwright driver started")
        return self._playwright

    # ==================== Session Lifecycle ====================

    async def start(
        self,
        scenario_id: str,
        engine: Union[str, EngineKind, None] = None,
        options: Optional[SessionOptions] = None,
    ) -> ScenarioSession:
        """
        Create a ready session for a scenario.

        Raises ProvisioningFailed if the engine cannot be launched even after
        an install attempt, and SessionStateError if the scenario already has
        a live session.
        """
        existing = self.sessions.get(scenario_id)
        if existing is not None and existing.state != SessionState.CLOSED:
            raise SessionStateError(scenario_id, existing.state.value, "start")

        engine = EngineKind.parse(engine or self.config.engine)
        if options is None:
            options = self.config.session_options(scenario_id)
        session = ScenarioSession(scenario_id, engine, options, self.config.screenshots_dir)
        self.sessions[scenario_id] = session

        session.transition(SessionState.PROVISIONING)
        try:
            await self._provision(session)
        except ProvisioningFailed:
            raise
        except Exception as e:
            raise ProvisioningFailed(engine.value, str(e)) from e
        finally:
            if session.state != SessionState.READY:
                await self._abandon(session)

        logger.info_with(
            "Session ready",
            scenario_id=scenario_id,
            engine=engine.value,
            headless=options.headless,
        )
        return session

    async def _provision(self, session: ScenarioSession):
        playwright = await self._ensure_playwright()
        try:
            await self._launch(playwright, session)
        except Exception as e:
            logger.warning(f"Launching {session.engine.value} failed, checking installation: {e}")
            await session.release()
            session.transition(SessionState.PROVISIONING)
            if not await self.provisioner.ensure_available(session.engine):
                raise ProvisioningFailed(
                    session.engine.value, f"engine unavailable and installation failed ({e})"
                ) from e
            await self._launch(playwright, session)
        session.transition(SessionState.READY)

    async def _launch(self, playwright, session: ScenarioSession):
        options = session.options
        launch_options = {"headless": options.headless}
        if session.engine == EngineKind.CHROMIUM:
            launch_options["args"] = CHROMIUM_ARGS
        session.browser = await getattr(playwright, session.engine.value).launch(**launch_options)

        viewport = {"width": options.viewport_width, "height": options.viewport_height}
        context_options = {"viewport": viewport}
        if options.video_dir:
            options.video_dir.mkdir(parents=True, exist_ok=True)
            context_options["record_video_dir"] = str(options.video_dir)
            context_options["record_video_size"] = viewport
        session.context = await session.browser.new_context(**context_options)

        session.page = await session.context.new_page()
        session.page.set_default_timeout(options.timeout_ms)
        session.page.set_default_navigation_timeout(options.navigation_timeout_ms)

    async def _abandon(self, session: ScenarioSession):
        await session.release()
        session.transition(SessionState.CLOSED)
        if self.sessions.get(session.scenario_id) is session:
            del self.sessions[session.scenario_id]

    async def capture_failure_evidence(
        self, session: ScenarioSession, label: str = "failure"
    ) -> Optional[EvidenceRecord]:
        """
        Screenshot the session for a failed scenario.

        Never raises: a capture problem must not replace the failure it was
        documenting. Returns None when nothing could be captured.
        """
        try:
            record = await session.screenshot(label)
        except Exception as e:
            logger.error_with(
                "Failure evidence capture failed",
                scenario_id=session.scenario_id,
                label=label,
                state=session.state.value,
                error=str(e),
            )
            return None
        logger.info_with("Captured failure evidence", scenario_id=session.scenario_id, path=record.file_path)
        return record

    async def teardown(self, session: ScenarioSession):
        """Release page, context and engine. A no-op for sessions already closed or closing."""
        if session.state in (SessionState.CLOSED, SessionState.TEARING_DOWN):
            return
        if session.state in (SessionState.UNINITIALIZED, SessionState.PROVISIONING):
            await self._abandon(session)
            return

        session.transition(SessionState.TEARING_DOWN)
        try:
            failures = await session.release()
        finally:
            session.transition(SessionState.CLOSED)
            if self.sessions.get(session.scenario_id) is session:
                del self.sessions[session.scenario_id]

        if failures:
            logger.warning_with("Session closed with release errors", scenario_id=session.scenario_id, **failures)
        else:
            logger.info_with("Session closed", scenario_id=session.scenario_id)

    @asynccontextmanager
    async def scenario(
        self,
        scenario_id: str,
        engine: Union[str, EngineKind, None] = None,
        options: Optional[SessionOptions] = None,
    ) -> AsyncIterator[ScenarioSession]:
        """
        Run a block against a fresh session.

        On an exception the failure screenshot is taken before teardown and
        the original exception propagates. Teardown always runs.
        """
        session = await self.start(scenario_id, engine, options)
        try:
            yield session
        except Exception:
            await self.capture_failure_evidence(session, "failure")
            raise
        finally:
            await self.teardown(session)

    def get_session(self, scenario_id: str) -> Optional[ScenarioSession]:
        return self.sessions.get(scenario_id)

    def live_sessions(self) -> List[ScenarioSession]:
        return [s for s in self.sessions.values() if s.is_live]

    async def close(self):
        """Tear down every session and stop the driver."""
        for session in list(self.sessions.values()):
            await self.teardown(session)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.error(f"Error stopping Playwright: {e}")
            self._playwright = None
            logger.info("Playwright driver stopped")
