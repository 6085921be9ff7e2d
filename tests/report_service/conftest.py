"""
Pytest fixtures for report service tests.

Chromium is replaced by small in-memory fakes that mimic the parts of the
Playwright Browser/BrowserContext/Page API the service uses, and Airtable
by an httpx.MockTransport.
"""

import asyncio
import os
from typing import List, Optional

# IMPORTANT: Set environment variables BEFORE any imports from report_service
# so the module-level app is built with valid settings.
os.environ["ENVIRONMENT"] = "development"
os.environ["INTERNAL_AUTH_TOKEN"] = "test-auth-token-1234"  # Min 16 chars
os.environ.setdefault("LOG_LEVEL", "INFO")

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from report_service.config import ServiceSettings
from report_service.runtime import ServiceRuntime

AUTH_TOKEN = "test-auth-token-1234"


class FakePage:
    """Stand-in for playwright Page."""

    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.content: Optional[str] = None
        self.default_timeout: Optional[float] = None
        self.pdf_kwargs: Optional[dict] = None
        self.closed = False

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    async def set_content(self, html: str, wait_until: Optional[str] = None) -> None:
        if self.browser.load_error is not None:
            raise self.browser.load_error
        if self.browser.load_delay:
            await asyncio.sleep(self.browser.load_delay)
        self.content = html

    async def wait_for_load_state(self, state: str, timeout: Optional[float] = None) -> None:
        if self.browser.network_busy:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded.")

    async def pdf(self, **kwargs) -> bytes:
        self.pdf_kwargs = kwargs
        if self.browser.pdf_delay:
            await asyncio.sleep(self.browser.pdf_delay)
        if self.browser.pdf_error is not None:
            raise self.browser.pdf_error
        return self.browser.pdf_bytes


class FakeBrowserContext:
    """Stand-in for playwright BrowserContext (one page per context)."""

    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.page: Optional[FakePage] = None
        self.closed = False

    async def new_page(self) -> FakePage:
        if self.browser.page_delay:
            await asyncio.sleep(self.browser.page_delay)
        self.page = FakePage(self.browser)
        return self.page

    async def close(self) -> None:
        self.closed = True
        if self.page is not None:
            self.page.closed = True


class FakeBrowser:
    """Stand-in for a launched Chromium process."""

    def __init__(
        self,
        pdf_bytes: bytes = b"%PDF-1.4 fake report",
        pdf_delay: float = 0.0,
        pdf_error: Optional[Exception] = None,
        load_delay: float = 0.0,
        load_error: Optional[Exception] = None,
        network_busy: bool = False,
        page_delay: float = 0.0,
    ):
        self.pdf_bytes = pdf_bytes
        self.pdf_delay = pdf_delay
        self.pdf_error = pdf_error
        self.load_delay = load_delay
        self.load_error = load_error
        self.network_busy = network_busy
        self.page_delay = page_delay
        self.context_failures = 0
        self.connected = True
        self.closed = False
        self.contexts: List[FakeBrowserContext] = []
        self._handlers = {}

    def on(self, event: str, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self) -> FakeBrowserContext:
        if not self.connected:
            raise RuntimeError("Target page, context or browser has been closed")
        if self.context_failures:
            self.context_failures -= 1
            raise RuntimeError("Protocol error (Target.createBrowserContext): Internal error")
        context = FakeBrowserContext(self)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    def crash(self) -> None:
        self.connected = False
        for handler in self._handlers.get("disconnected", []):
            handler(self)

    @property
    def open_contexts(self) -> List[FakeBrowserContext]:
        return [c for c in self.contexts if not c.closed]


class FakeLauncher:
    """Callable passed to EnginePool as ``launcher``; records launched browsers."""

    def __init__(self, fail_times: int = 0, **browser_behavior):
        self.fail_times = fail_times
        self.browser_behavior = browser_behavior
        self.browsers: List[FakeBrowser] = []
        self.calls = 0

    async def __call__(self) -> FakeBrowser:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("Failed to launch chromium: missing libnss3.so")
        browser = FakeBrowser(**self.browser_behavior)
        self.browsers.append(browser)
        return browser

    @property
    def open_contexts(self) -> List[FakeBrowserContext]:
        return [c for b in self.browsers for c in b.open_contexts]


class FakeAirtable:
    """Records PATCH requests and answers with a configurable response."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.delay = 0.0
        self.error: Optional[Exception] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.status_code >= 400:
            return httpx.Response(
                self.status_code,
                json={"error": {"type": "INVALID_PERMISSIONS", "message": "Not allowed"}},
            )
        return httpx.Response(self.status_code, json={"records": [{"id": "rec1", "fields": {}}]})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def make_settings(tmp_path):
    """Factory for ServiceSettings pointing at a temp serving directory."""

    def _make(**overrides) -> ServiceSettings:
        values = {
            "serving_dir": str(tmp_path / "public"),
            "public_base_url": "https://reports.example.com/",
            "airtable_api_key": "patTestKey",
            "airtable_base_id": "appTestBase",
            "max_engine_instances": 1,
            "max_contexts_per_instance": 2,
            "render_timeout_seconds": 2.0,
            "render_load_timeout_seconds": 0.5,
            "upload_timeout_seconds": 1.0,
            "overall_deadline_seconds": 5.0,
            "acquire_timeout_seconds": 1.0,
            "shutdown_grace_seconds": 0.5,
        }
        values.update(overrides)
        return ServiceSettings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def airtable():
    return FakeAirtable()


@pytest.fixture
def make_runtime(launcher, airtable):
    """Factory for a ServiceRuntime wired to fake Chromium and fake Airtable."""

    def _make(settings: ServiceSettings, launcher_override: Optional[FakeLauncher] = None) -> ServiceRuntime:
        return ServiceRuntime(
            settings,
            launcher=launcher_override or launcher,
            http_client=airtable.client(),
        )

    return _make


@pytest.fixture
def serving_files(tmp_path):
    """List the PDFs currently in the serving directory."""

    def _list() -> List[str]:
        directory = tmp_path / "public"
        if not directory.exists():
            return []
        return sorted(p.name for p in directory.iterdir() if p.suffix == ".pdf")

    return _list
