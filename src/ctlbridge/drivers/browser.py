"""Browser driver: engine -> context -> surface over playwright's async API.

An engine is a launched browser (with its playwright instance), a context
is an isolated browser context, and a surface is a page. playwright is an
optional dependency and is imported on first use.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import Field

from ctlbridge.drivers.protocol import NoParams, OpParams
from ctlbridge.errors import DriverFailure, DriverTimeout, InvalidParams
from ctlbridge.logging import get_logger

log = get_logger("drivers.browser")

BrowserName = Literal["chromium", "firefox", "webkit"]

# Seconds past the per-operation timeout before a call is abandoned
OPERATION_GRACE = 0.5

QUERY_SCRIPT = """(elements, limit) => ({
    total: elements.length,
    items: elements.slice(0, limit).map(e => ({
        tag: e.tagName.toLowerCase(),
        id: e.id || null,
        text: (e.innerText || '').trim().slice(0, 200),
        href: e.getAttribute('href'),
        value: e.value === undefined ? null : e.value,
    })),
})"""


@dataclass
class BrowserHandle:
    """A playwright object at one level of the tree.

    Attributes:
        kind: engine, context or surface.
        target: Browser, BrowserContext or Page.
        playwright: The playwright instance that owns an engine.
        name: Browser type for engines.
    """

    kind: str
    target: Any
    playwright: Any = None
    name: str = ""


class EngineOptions(OpParams):
    browser: BrowserName | None = None
    headless: bool | None = None


class Viewport(OpParams):
    width: int = Field(ge=1)
    height: int = Field(ge=1)


class ContextOptions(OpParams):
    viewport: Viewport | None = None
    user_agent: str | None = Field(default=None, alias="userAgent")
    locale: str | None = None
    timezone_id: str | None = Field(default=None, alias="timezoneId")
    color_scheme: Literal["light", "dark", "no-preference"] | None = Field(
        default=None, alias="colorScheme"
    )


class SurfaceOptions(OpParams):
    url: str | None = None


class NavigateArgs(OpParams):
    url: str
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = Field(
        default="load", alias="waitUntil"
    )


class ClickArgs(OpParams):
    selector: str
    button: Literal["left", "right", "middle"] = "left"
    click_count: int = Field(default=1, ge=1, alias="clickCount")


class TypeArgs(OpParams):
    selector: str
    text: str
    delay: float = Field(default=0, ge=0)


class WriteArgs(OpParams):
    text: str
    delay: float = Field(default=0, ge=0)


class FillArgs(OpParams):
    selector: str
    value: str


class SelectArgs(OpParams):
    selector: str
    values: list[str]


class ContentArgs(OpParams):
    selector: str | None = None
    max_length: int | None = Field(default=None, ge=1, alias="maxLength")


class TextArgs(OpParams):
    selector: str = "body"


class QueryArgs(OpParams):
    selector: str
    limit: int = Field(default=20, ge=1)


class ScreenshotArgs(OpParams):
    filename: str | None = None
    full_page: bool = Field(default=False, alias="fullPage")
    selector: str | None = None


class WaitArgs(OpParams):
    selector: str | None = None
    state: Literal["attached", "detached", "visible", "hidden"] = "visible"
    timeout: float | None = Field(default=None, gt=0)


class EvaluateArgs(OpParams):
    script: str


class BrowserDriver:
    """Drive browsers through playwright."""

    name = "browser"
    levels = ("engine", "context", "surface")
    options = {
        "engine": EngineOptions,
        "context": ContextOptions,
        "surface": SurfaceOptions,
    }
    operations = {
        "surface": {
            "navigate": NavigateArgs,
            "click": ClickArgs,
            "type": TypeArgs,
            "write": WriteArgs,
            "fill": FillArgs,
            "select": SelectArgs,
            "content": ContentArgs,
            "text": TextArgs,
            "query": QueryArgs,
            "screenshot": ScreenshotArgs,
            "wait": WaitArgs,
            "evaluate": EvaluateArgs,
            "title": NoParams,
            "url": NoParams,
        },
    }
    standalone: dict[str, type[OpParams]] = {}

    def __init__(
        self,
        browser: str = "chromium",
        headless: bool = True,
        operation_timeout: float = 30.0,
        screenshot_dir: str | None = None,
    ) -> None:
        """Initialize the driver.

        Args:
            browser: Default browser type for new engines.
            headless: Default headless mode for new engines.
            operation_timeout: Seconds allowed for each page operation.
            screenshot_dir: Where screenshots are written (default: system temp).
        """
        self._browser = browser
        self._headless = headless
        self._timeout_ms = operation_timeout * 1000
        self._screenshot_dir = screenshot_dir or tempfile.gettempdir()
        self._api: Any = None

    def _load_api(self) -> Any:
        if self._api is None:
            try:
                from playwright import async_api
            except ImportError as e:
                raise DriverFailure(
                    "playwright is not installed (pip install 'ctlbridge[browser]')"
                ) from e
            self._api = async_api
        return self._api

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def spawn_top(self, options: OpParams) -> BrowserHandle:
        assert isinstance(options, EngineOptions)
        api = self._load_api()
        browser_name = options.browser or self._browser
        headless = self._headless if options.headless is None else options.headless

        playwright = await api.async_playwright().start()
        try:
            launcher = getattr(playwright, browser_name)
            browser = await launcher.launch(headless=headless)
        except BaseException:
            await playwright.stop()
            raise

        log.debug("Launched %s (headless=%s)", browser_name, headless)
        return BrowserHandle("engine", browser, playwright=playwright, name=browser_name)

    async def spawn_child(self, parent_handle: BrowserHandle, kind: str, options: OpParams) -> BrowserHandle:
        if kind == "context":
            assert isinstance(options, ContextOptions)
            kwargs = options.model_dump(exclude_none=True)
            context = await parent_handle.target.new_context(**kwargs)
            return BrowserHandle("context", context)

        if kind == "surface":
            assert isinstance(options, SurfaceOptions)
            page = await parent_handle.target.new_page()
            if options.url:
                with self._timeouts("navigate"):
                    await page.goto(options.url, timeout=self._timeout_ms)
            return BrowserHandle("surface", page)

        raise InvalidParams(f"browser has no {kind} level")

    async def close(self, handle: BrowserHandle) -> None:
        try:
            await handle.target.close()
        finally:
            if handle.playwright is not None:
                await handle.playwright.stop()

    def describe(self, handle: BrowserHandle) -> dict[str, str]:
        if handle.kind == "engine":
            return {"browser": handle.name}
        if handle.kind == "surface":
            return {"url": handle.target.url}
        return {}

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def _timeouts(self, op: str) -> _TimeoutMapper:
        return _TimeoutMapper(self._load_api().TimeoutError, op)

    async def invoke(self, handle: BrowserHandle, op: str, args: OpParams) -> Any:
        method = getattr(self, f"_op_{op}", None)
        if method is None:
            raise InvalidParams(f"Unknown browser operation: {op}")
        limit = self._limit(args)
        with self._timeouts(op):
            try:
                return await asyncio.wait_for(method(handle.target, args), limit)
            except asyncio.TimeoutError as e:
                raise DriverTimeout(f"browser {op} timed out after {limit:g}s") from e

    def _limit(self, args: OpParams) -> float:
        """Overall bound for one operation, past playwright's own timeout."""
        seconds = self._timeout_ms / 1000
        if isinstance(args, WaitArgs) and args.timeout:
            seconds = max(seconds, args.timeout)
        return seconds + OPERATION_GRACE

    async def _op_navigate(self, page: Any, args: NavigateArgs) -> dict[str, Any]:
        response = await page.goto(args.url, wait_until=args.wait_until, timeout=self._timeout_ms)
        return {
            "url": page.url,
            "status": response.status if response is not None else None,
            "title": await page.title(),
        }

    async def _op_click(self, page: Any, args: ClickArgs) -> dict[str, Any]:
        await page.click(
            args.selector,
            button=args.button,
            click_count=args.click_count,
            timeout=self._timeout_ms,
        )
        return {"clicked": args.selector}

    async def _op_type(self, page: Any, args: TypeArgs) -> dict[str, Any]:
        await page.locator(args.selector).press_sequentially(
            args.text, delay=args.delay, timeout=self._timeout_ms
        )
        return {"selector": args.selector, "typed": len(args.text)}

    async def _op_write(self, page: Any, args: WriteArgs) -> dict[str, Any]:
        await page.keyboard.type(args.text, delay=args.delay)
        return {"written": len(args.text)}

    async def _op_fill(self, page: Any, args: FillArgs) -> dict[str, Any]:
        await page.fill(args.selector, args.value, timeout=self._timeout_ms)
        return {"selector": args.selector, "filled": True}

    async def _op_select(self, page: Any, args: SelectArgs) -> dict[str, Any]:
        selected = await page.select_option(args.selector, args.values, timeout=self._timeout_ms)
        return {"selector": args.selector, "selected": selected}

    async def _op_content(self, page: Any, args: ContentArgs) -> dict[str, Any]:
        if args.selector:
            html = await page.inner_html(args.selector, timeout=self._timeout_ms)
        else:
            html = await page.content()
        length = len(html)
        truncated = args.max_length is not None and length > args.max_length
        if truncated:
            html = html[: args.max_length]
        return {"content": html, "length": length, "truncated": truncated}

    async def _op_text(self, page: Any, args: TextArgs) -> dict[str, Any]:
        text = await page.inner_text(args.selector, timeout=self._timeout_ms)
        return {"selector": args.selector, "text": text}

    async def _op_query(self, page: Any, args: QueryArgs) -> dict[str, Any]:
        found = await page.eval_on_selector_all(args.selector, QUERY_SCRIPT, args.limit)
        return {
            "selector": args.selector,
            "count": found["total"],
            "elements": found["items"],
        }

    async def _op_screenshot(self, page: Any, args: ScreenshotArgs) -> dict[str, Any]:
        filename = args.filename or f"screenshot-{uuid.uuid4().hex[:8]}.png"
        path = os.path.join(self._screenshot_dir, filename)
        if args.selector:
            await page.locator(args.selector).screenshot(path=path, timeout=self._timeout_ms)
        else:
            await page.screenshot(path=path, full_page=args.full_page, timeout=self._timeout_ms)
        return {"path": path}

    async def _op_wait(self, page: Any, args: WaitArgs) -> dict[str, Any]:
        timeout = args.timeout * 1000 if args.timeout else self._timeout_ms
        if args.selector:
            await page.wait_for_selector(args.selector, state=args.state, timeout=timeout)
        else:
            await page.wait_for_load_state(timeout=timeout)
        return {"ready": True, "selector": args.selector}

    async def _op_evaluate(self, page: Any, args: EvaluateArgs) -> dict[str, Any]:
        return {"result": await page.evaluate(args.script)}

    async def _op_title(self, page: Any, args: NoParams) -> dict[str, Any]:
        return {"title": await page.title()}

    async def _op_url(self, page: Any, args: NoParams) -> dict[str, Any]:
        return {"url": page.url}

    async def run_standalone(self, op: str, args: OpParams) -> Any:
        raise InvalidParams(f"Unknown browser operation: {op}")


class _TimeoutMapper:
    """Context manager turning playwright's TimeoutError into DriverTimeout."""

    def __init__(self, timeout_error: type[BaseException], op: str) -> None:
        self._timeout_error = timeout_error
        self._op = op

    def __enter__(self) -> _TimeoutMapper:
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> bool:
        if exc is not None and isinstance(exc, self._timeout_error):
            raise DriverTimeout(f"browser {self._op} timed out: {exc}") from exc
        return False
