"""
ScenarioSession - one engine, one isolated context and one page for one scenario.

The session exposes the capability set step definitions and page objects use.
Lifecycle transitions are driven by SessionLifecycleManager.
"""
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import EvidenceCaptureError, SessionStateError
from ..logging_config import get_logger
from .models import (
    ALLOWED_TRANSITIONS,
    LIVE_STATES,
    EngineKind,
    EvidenceRecord,
    SessionOptions,
    SessionState,
    safe_name,
)

logger = get_logger("scenario_runner.browser.session")

# Released in this order: page, then context, then engine
RELEASE_ORDER = ("page", "context", "browser")


class ScenarioSession:
    """A browser session scoped to exactly one scenario."""

    def __init__(
        self,
        scenario_id: str,
        engine: EngineKind,
        options: SessionOptions,
        screenshots_dir: Path,
    ):
        self.scenario_id = scenario_id
        self.engine = engine
        self.options = options
        self.screenshots_dir = Path(screenshots_dir)
        self.state = SessionState.UNINITIALIZED
        self.created_at = datetime.now().isoformat()
        self.closed_at: Optional[str] = None
        self.current_url = ""
        self.evidence: List[EvidenceRecord] = []
        self.release_errors: Dict[str, str] = {}

        self.browser: Any = None
        self.context: Any = None
        self.page: Any = None

    def __repr__(self):
        return f"<ScenarioSession {self.scenario_id!r} {self.engine.value} {self.state.value}>"

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def file_stem(self) -> str:
        return safe_name(self.scenario_id)

    def transition(self, new_state: SessionState):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(self.scenario_id, self.state.value, f"enter {new_state.value}")
        logger.debug(f"Session {self.scenario_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state == SessionState.CLOSED:
            self.closed_at = datetime.now().isoformat()

    async def release(self) -> Dict[str, str]:
        """
        Close page, context and engine, each independently.

        A failure on one handle is logged and recorded; the remaining handles
        are still closed. Returns the failures keyed by handle name.
        """
        failures: Dict[str, str] = {}
        for name in RELEASE_ORDER:
            handle = getattr(self, name)
            if handle is None:
                continue
            setattr(self, name, None)
            try:
                await handle.close()
            except Exception as e:
                failures[name] = str(e)
                logger.error_with(
                    "Failed to release browser resource",
                    scenario_id=self.scenario_id,
                    resource=name,
                    error=str(e),
                )
        self.release_errors.update(failures)
        return failures

    def _live_page(self, operation: str):
        if not self.is_live or self.page is None:
            raise SessionStateError(self.scenario_id, self.state.value, operation)
        if self.state == SessionState.READY:
            self.transition(SessionState.IN_USE)
        return self.page

    # ==================== Capabilities ====================

    async def navigate(self, url: str, wait_until: str = "domcontentloaded") -> Optional[int]:
        """Navigate to a URL. Returns the HTTP status of the main response, if any."""
        page = self._live_page("navigate")
        response = await page.goto(url, wait_until=wait_until)
        self.current_url = page.url
        return response.status if response else None

    async def element_visible(self, selector: str) -> bool:
        """True if ``selector`` currently matches a visible element. Does not wait."""
        page = self._live_page("check element visibility")
        return await page.is_visible(selector)

    async def element_exists(self, selector: str) -> bool:
        page = self._live_page("check element existence")
        return await page.query_selector(selector) is not None

    async def wait_for_visible(self, selector: str, timeout_ms: int = 10000):
        """Wait until ``selector`` is visible; raises Playwright's TimeoutError otherwise."""
        page = self._live_page("wait for element")
        await page.wait_for_selector(selector, state="visible", timeout=timeout_ms)

    async def first_visible(self, selectors: Sequence[str], timeout_ms: int = 3000) -> Optional[str]:
        """Return the first of ``selectors`` that becomes visible within ``timeout_ms``, else None."""
        for selector in selectors:
            if await self._becomes_visible(selector, timeout_ms):
                return selector
        return None

    async def _becomes_visible(self, selector: str, timeout_ms: int) -> bool:
        try:
            await self.wait_for_visible(selector, timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return True

    async def title(self) -> str:
        page = self._live_page("read title")
        return await page.title()

    async def wait_for_load(self, state: str = "networkidle"):
        page = self._live_page("wait for load state")
        await page.wait_for_load_state(state)

    async def screenshot(self, label: str, full_page: bool = True) -> EvidenceRecord:
        """Save a screenshot named ``<scenario>-<label>.png`` and record it as evidence."""
        page = self._live_page("take screenshot")
        path = self.screenshots_dir / f"{self.file_stem}-{safe_name(label)}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path), full_page=full_page)
        except (PlaywrightError, OSError) as e:
            raise EvidenceCaptureError(self.scenario_id, str(e), label=label) from e

        record = EvidenceRecord(
            scenario_id=self.scenario_id,
            label=label,
            file_path=str(path),
            url=self.current_url,
        )
        self.evidence.append(record)
        return record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "engine": self.engine.value,
            "state": self.state.value,
            "options": self.options.to_dict(),
            "current_url": self.current_url,
            "created_at": self.created_at,
            "closed_at": self.closed_at,
            "evidence": [e.to_dict() for e in self.evidence],
            "release_errors": self.release_errors,
        }
