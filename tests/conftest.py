import sys
from pathlib import Path

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

sys.path.insert(0, str(Path(__file__).parent.parent))

from scenario_runner.config import RunnerConfig


class FakeResponse:
    def __init__(self, status=200):
        self.status = status


class FakePage:
    def __init__(self, events, visible=(), fail_close=False):
        self.events = events
        self.visible = set(visible)
        self.fail_close = fail_close
        self.url = "about:blank"
        self.default_timeout = None
        self.default_navigation_timeout = None
        self.screenshots = []

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    def set_default_navigation_timeout(self, timeout):
        self.default_navigation_timeout = timeout

    async def goto(self, url, wait_until=None):
        self.url = url
        return FakeResponse(200)

    async def is_visible(self, selector):
        return selector in self.visible

    async def query_selector(self, selector):
        return object() if selector in self.visible else None

    async def wait_for_selector(self, selector, state="visible", timeout=None):
        if selector not in self.visible:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return object()

    async def title(self):
        return "Example Domain"

    async def wait_for_load_state(self, state="load"):
        return None

    async def screenshot(self, path, full_page=False):
        Path(path).write_bytes(b"\x89PNG fake")
        self.screenshots.append(path)

    async def close(self):
        self.events.append("page")
        if self.fail_close:
            raise RuntimeError("page already crashed")


class FakeContext:
    def __init__(self, events, page):
        self.events = events
        self.page = page
        self.options = {}

    async def new_page(self):
        return self.page

    async def close(self):
        self.events.append("context")


class FakeBrowser:
    def __init__(self, events, page):
        self.events = events
        self.page = page
        self.contexts = []

    async def new_context(self, **options):
        context = FakeContext(self.events, self.page)
        context.options = options
        self.contexts.append(context)
        return context

    async def close(self):
        self.events.append("browser")


class FakeBrowserType:
    def __init__(self, name, driver):
        self.name = name
        self.driver = driver
        self.launches = []

    async def launch(self, **kwargs):
        self.launches.append(kwargs)
        if self.driver.launch_failures > 0:
            self.driver.launch_failures -= 1
            raise RuntimeError(f"Executable doesn't exist for {self.name}")
        return FakeBrowser(self.driver.events, self.driver.page)


class FakePlaywright:
    """Stands in for both ``async_playwright()`` and the started driver."""

    def __init__(self, visible=(), launch_failures=0, fail_page_close=False):
        self.events = []
        self.page = FakePage(self.events, visible=visible, fail_close=fail_page_close)
        self.launch_failures = launch_failures
        self.starts = 0
        self.stopped = False
        self.chromium = FakeBrowserType("chromium", self)
        self.firefox = FakeBrowserType("firefox", self)
        self.webkit = FakeBrowserType("webkit", self)

    async def start(self):
        self.starts += 1
        return self

    async def stop(self):
        self.stopped = True

    def factory(self):
        return self


@pytest.fixture
def config(tmp_path):
    return RunnerConfig(
        results_dir=tmp_path / "test-results",
        logs_dir=tmp_path / "logs",
        probe_timeout=2,
        install_timeout=10,
        kill_grace=1,
    )


@pytest.fixture
def fake_playwright():
    return FakePlaywright(visible={"h1", "#login"})
