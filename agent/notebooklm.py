"""
NotebookLM browser automation via Playwright.

Classes:
    NotebookLMSession  – headless session driver (used by the dispatcher)
    NotebookLMLinker   – headful manual-login helper (used by scripts/notebooklm_login.py)

There is no API: every step clicks through the Japanese-locale UI and infers
progress from text markers appearing or disappearing. Expect these selectors
to break whenever NotebookLM ships a UI change.
"""

import asyncio
import logging
import os
from pathlib import Path

from playwright.async_api import (
    async_playwright,
    BrowserContext,
    Error as PWError,
    Page,
    TimeoutError as PWTimeout,
)

from agent.session import (
    ArtifactNotFoundError,
    FetchedArtifact,
    GenerationTimeoutError,
    SessionDriver,
    SessionInitError,
    WorkflowStepError,
)
from models.job import AUDIO, VIDEO

logger = logging.getLogger(__name__)

USER_DATA_DIR: str = os.getenv("USER_DATA_DIR", "user-data")
HEADLESS: bool = os.getenv("HEADLESS", "true").lower() == "true"
NOTEBOOKLM_URL: str = os.getenv("NOTEBOOKLM_URL", "https://notebooklm.google.com")
GENERATION_TIMEOUT_S: float = float(os.getenv("GENERATION_TIMEOUT_S", "900"))

SOURCE_TIMEOUT_MS = 60_000
MARKER_TIMEOUT_MS = 10_000
DOWNLOAD_TIMEOUT_MS = 120_000

_LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",  # removes navigator.webdriver
    "--disable-features=site-per-process",
    "--disable-dev-shm-usage",
]

# ── UI markers ─────────────────────────────────────────────────────────────────

_CREATE_NOTEBOOK = 'button[aria-label="ノートブックを新規作成"]'
_SOURCE_WEBSITE = 'text="ウェブサイト"'
_URL_INPUT = "textarea.mat-mdc-input-element"
_INSERT_BUTTON = 'button:has-text("挿入")'
_SOURCE_READY = 'text="1 ソース"'

_GENERATE_BUTTON = {
    AUDIO: 'div.blue.create-artifact-button-container:has-text("音声解説")',
    VIDEO: 'div.green.create-artifact-button-container:has-text("動画解説")',
}

# Present while generation runs; its disappearance means done
_GENERATING = {
    AUDIO: ':text("音声解説を生成しています")',
    VIDEO: ':text("動画解説を生成しています")',
}

_ARTIFACT_CARD = {
    AUDIO: "button.artifact-button-content:has(mat-icon.artifact-icon.blue)",
    VIDEO: "button.artifact-button-content:has(mat-icon.artifact-icon.green)",
}
_MORE_MENU = 'mat-icon:text("more_vert")'
_DOWNLOAD_ITEM = 'text="ダウンロード"'

_SIGN_IN_MARKERS = ("accounts.google.com", "/signin", "ServiceLogin")


async def _launch(pw, headless: bool) -> BrowserContext:
    context = await pw.chromium.launch_persistent_context(
        USER_DATA_DIR,
        headless=headless,
        args=_LAUNCH_ARGS,
        viewport={"width": 1920, "height": 1080},
        locale="ja-JP",
        accept_downloads=True,
    )
    return context


def _looks_signed_out(url: str) -> bool:
    return any(marker in url for marker in _SIGN_IN_MARKERS)


async def _shutdown(context: BrowserContext | None, pw) -> None:
    # The driver process must stop even when the browser already died
    try:
        if context:
            await context.close()
            logger.info("Browser closed")
    finally:
        if pw:
            await pw.stop()


# ── NotebookLMSession ──────────────────────────────────────────────────────────

class NotebookLMSession(SessionDriver):
    """
    One persistent, logged-in Chromium context.

    The login lives in USER_DATA_DIR (created by scripts/notebooklm_login.py).
    Only one of these may be open at a time since they share that directory.

        async with NotebookLMSession() as session:
            await session.create_workspace()
            await session.attach_source("https://example.com/a")
    """

    def __init__(
        self,
        headless: bool = HEADLESS,
        generation_timeout_s: float = GENERATION_TIMEOUT_S,
    ):
        self.headless = headless
        self.generation_timeout_s = generation_timeout_s
        self._pw = None
        self._context: BrowserContext | None = None
        self.page: Page | None = None

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def open(self) -> None:
        if not Path(USER_DATA_DIR).exists():
            raise SessionInitError(
                f"No saved login at {USER_DATA_DIR}; run scripts/notebooklm_login.py first"
            )

        logger.info(
            "Initializing Playwright browser",
            extra={"headless": self.headless, "user_data_dir": USER_DATA_DIR},
        )
        try:
            self._pw = await async_playwright().start()
            self._context = await _launch(self._pw, self.headless)
            self._context.set_default_timeout(15 * 60 * 1000)
            pages = self._context.pages
            self.page = pages[0] if pages else await self._context.new_page()

            await self.page.goto(NOTEBOOKLM_URL, wait_until="domcontentloaded", timeout=30000)
        except PWError as exc:
            raise SessionInitError(f"Browser launch failed: {exc}") from exc

        if _looks_signed_out(self.page.url):
            raise SessionInitError(f"Saved login has expired (redirected to {self.page.url})")

        logger.info("Browser initialized")

    async def close(self) -> None:
        context, pw = self._context, self._pw
        self._context = None
        self._pw = None
        self.page = None
        await _shutdown(context, pw)

    def _require_page(self) -> Page:
        if self.page is None:
            raise SessionInitError("Browser not initialized; open the session first")
        return self.page

    # ── Workflow steps ─────────────────────────────────────────────────────────

    async def create_workspace(self) -> None:
        page = self._require_page()
        try:
            logger.info("Navigating to NotebookLM home page")
            await page.goto(NOTEBOOKLM_URL, wait_until="domcontentloaded", timeout=30000)
            await page.wait_for_selector(_CREATE_NOTEBOOK, timeout=MARKER_TIMEOUT_MS)
            await page.click(_CREATE_NOTEBOOK)
            await asyncio.sleep(3)
        except PWError as exc:
            raise WorkflowStepError("create_workspace", str(exc)) from exc
        logger.info("New notebook created")

    async def attach_source(self, url: str) -> None:
        """Add *url* as a website source and wait until NotebookLM lists it."""
        page = self._require_page()
        try:
            # The source dialog opens by itself on a fresh notebook
            await page.wait_for_selector(_SOURCE_WEBSITE, timeout=MARKER_TIMEOUT_MS)
            await page.click(_SOURCE_WEBSITE)
            await asyncio.sleep(2)

            await page.wait_for_selector(_URL_INPUT, timeout=MARKER_TIMEOUT_MS)
            await page.fill(_URL_INPUT, url)
            await page.click(_INSERT_BUTTON)
        except PWError as exc:
            raise WorkflowStepError("attach_source", f"source dialog: {exc}") from exc

        logger.info("Waiting for source to be processed", extra={"url": url})
        try:
            await page.wait_for_selector(_SOURCE_READY, timeout=SOURCE_TIMEOUT_MS)
        except PWTimeout as exc:
            raise WorkflowStepError(
                "attach_source",
                f"source not ingested within {SOURCE_TIMEOUT_MS // 1000}s",
            ) from exc
        logger.info("URL source added", extra={"url": url})

    async def start_generation(self, kind: str) -> None:
        page = self._require_page()
        try:
            button = page.locator(_GENERATE_BUTTON[kind]).first
            if await button.count() == 0:
                raise WorkflowStepError("start_generation", f"{kind} button not found")
            await button.click()
            await page.wait_for_selector(
                _GENERATING[kind], state="visible", timeout=MARKER_TIMEOUT_MS
            )
        except PWError as exc:
            raise WorkflowStepError("start_generation", f"{kind}: {exc}") from exc
        logger.info("Generation started", extra={"kind": kind})

    async def await_generation(self, kind: str) -> None:
        page = self._require_page()
        try:
            await page.wait_for_selector(
                _GENERATING[kind],
                state="hidden",
                timeout=self.generation_timeout_s * 1000,
            )
        except PWTimeout as exc:
            raise GenerationTimeoutError(kind, self.generation_timeout_s) from exc
        logger.info("Generation completed", extra={"kind": kind})

    async def fetch_artifact(self, kind: str) -> FetchedArtifact:
        page = self._require_page()
        card = page.locator(_ARTIFACT_CARD[kind]).first
        if await card.count() == 0:
            raise ArtifactNotFoundError(kind)

        try:
            await card.locator(_MORE_MENU).click()
            await asyncio.sleep(0.5)
            async with page.expect_download(timeout=DOWNLOAD_TIMEOUT_MS) as dl_info:
                await page.click(_DOWNLOAD_ITEM)
            download = await dl_info.value
            path = await download.path()
        except PWError as exc:
            raise WorkflowStepError("fetch_artifact", f"{kind}: {exc}") from exc

        if not path:
            raise WorkflowStepError("fetch_artifact", f"{kind}: download has no file")

        data = Path(path).read_bytes()
        logger.info(
            "Media downloaded",
            extra={"kind": kind, "size": len(data), "filename": download.suggested_filename},
        )
        return FetchedArtifact(data=data, filename=download.suggested_filename)


# ── NotebookLMLinker ───────────────────────────────────────────────────────────

class NotebookLMLinker:
    """
    Headful browser used once to sign into Google by hand.

    The persistent context writes cookies straight into USER_DATA_DIR, so
    closing the browser after a successful login is all that is needed.
    No credentials are ever stored by this code.
    """

    def __init__(self) -> None:
        self._pw = None
        self._context: BrowserContext | None = None
        self.page: Page | None = None

    async def start(self) -> None:
        Path(USER_DATA_DIR).mkdir(parents=True, exist_ok=True)
        self._pw = await async_playwright().start()
        self._context = await _launch(self._pw, headless=False)
        pages = self._context.pages
        self.page = pages[0] if pages else await self._context.new_page()
        await self.page.goto(NOTEBOOKLM_URL, wait_until="domcontentloaded", timeout=30000)

    async def is_logged_in(self) -> bool:
        """True once the NotebookLM home page shows the new-notebook button."""
        if self.page is None:
            return False
        if _looks_signed_out(self.page.url):
            return False
        try:
            return await self.page.locator(_CREATE_NOTEBOOK).count() > 0
        except PWError:
            return False

    async def close(self) -> None:
        context, pw = self._context, self._pw
        self._context = None
        self._pw = None
        self.page = None
        await _shutdown(context, pw)
