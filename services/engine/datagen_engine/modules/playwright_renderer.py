"""Headless Chromium transport driven through Playwright's sync API.

Playwright objects are bound to the thread that created them, so each
renderer process owns one dedicated thread and every browser call for that
process (and its pages) is submitted to it with a deadline. The rest of the
pipeline may then hand sessions between its own threads freely.
"""

from __future__ import annotations

import base64
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar
from urllib.parse import quote

from playwright.sync_api import Browser, Page, Playwright, sync_playwright

from ..errors import DatagenError, LoadTimeout, RemoteCallFailure

LOGGER = logging.getLogger("datagen.renderer")

T = TypeVar("T")

PNG_DATA_URL_PREFIX = "data:image/png;base64,"

# Installed before any page script runs. It turns the renderer's legacy
# ``VPDE_READY`` flag (and an explicit ``vpde:ready`` event) into a promise
# that can be awaited with a deadline.
READINESS_BRIDGE = """
(() => {
  let resolveReady;
  const ready = new Promise((resolve) => { resolveReady = resolve; });
  let flag = false;
  Object.defineProperty(window, "VPDE_READY", {
    configurable: true,
    get() { return flag; },
    set(value) { flag = Boolean(value); if (flag) resolveReady(true); },
  });
  window.addEventListener("vpde:ready", () => resolveReady(true), { once: true });
  window.__datagenReady = ready;
})();
"""

AWAIT_READY = """
(ms) => Promise.race([
  window.__datagenReady.then(() => true),
  new Promise((resolve) => setTimeout(() => resolve(false), ms)),
])
"""


@dataclass(frozen=True)
class PlaywrightConfig:
    html_path: Path
    width: int = 512
    height: int = 512
    headless: bool = True
    use_swiftshader: bool = True
    launch_timeout_s: float = 60.0
    call_timeout_s: float = 30.0
    navigation_timeout_s: float = 30.0

    def launch_args(self) -> list[str]:
        if self.use_swiftshader:
            gl_args = ["--use-gl=angle", "--use-angle=swiftshader-webgl", "--enable-unsafe-swiftshader"]
        else:
            gl_args = ["--use-gl=egl"]
        return [
            *gl_args,
            "--enable-webgl",
            "--enable-webgl2",
            "--disable-web-security",
            "--no-sandbox",
            "--disable-setuid-sandbox",
            "--disable-dev-shm-usage",
            "--disable-gpu-sandbox",
            f"--window-size={self.width},{self.height}",
        ]


class PlaywrightSession:
    def __init__(self, process: "PlaywrightRendererProcess", page: Page):
        self._process = process
        self._page = page

    def load_preset(self, preset: str, resolution: tuple[int, int]) -> None:
        width, height = resolution
        url = f"{self._process.html_url}?preset={quote(preset)}"
        timeout_ms = self._process.config.navigation_timeout_s * 1000.0

        def _load() -> None:
            self._page.set_viewport_size({"width": int(width), "height": int(height)})
            self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

        self._process.call(_load, timeout=self._process.config.navigation_timeout_s + 5.0)

    def await_ready(self, timeout_s: float) -> None:
        try:
            ready = self._process.call(
                lambda: self._page.evaluate(AWAIT_READY, timeout_s * 1000.0),
                timeout=timeout_s + 5.0,
            )
        except RemoteCallFailure as exc:
            raise LoadTimeout(f"renderer readiness could not be awaited: {exc}") from exc
        if not ready:
            raise LoadTimeout(f"renderer did not signal ready within {timeout_s:.1f}s")

    def set_seed(self, seed: int) -> None:
        self._evaluate(
            """(seed) => {
              window.VPDE_SEED = seed;
              window.VPDE.setOption("setSeed", true);
              window.VPDE.setOption("randSeed", seed);
            }""",
            int(seed),
        )

    def set_option(self, key: str, value: Any) -> None:
        self._evaluate("([key, value]) => window.VPDE.setOption(key, value)", [key, value])

    def recompute_derived_parameters(self) -> None:
        self._evaluate("() => window.VPDE.updateProblem()")

    def reset(self) -> None:
        self._evaluate("() => window.VPDE.reset()")

    def step(self, n: int) -> None:
        self._evaluate("(n) => window.VPDE.stepN(n)", int(n))

    def render(self) -> None:
        self._evaluate("() => window.VPDE.render()")

    def capture_frame(self) -> bytes:
        data_url = self._evaluate("() => window.VPDE.captureFrame()")
        if not isinstance(data_url, str) or not data_url.startswith(PNG_DATA_URL_PREFIX):
            raise RemoteCallFailure("captureFrame did not return a PNG data URL")
        return base64.b64decode(data_url[len(PNG_DATA_URL_PREFIX) :])

    def get_simulation_time(self) -> float:
        return float(self._evaluate("() => window.VPDE.getTime()"))

    def get_options_snapshot(self) -> dict[str, Any]:
        snapshot = self._evaluate("() => JSON.parse(JSON.stringify(window.VPDE.getOptions()))")
        return dict(snapshot or {})

    def apply_localized_edit(
        self,
        x: float,
        y: float,
        field: str,
        value: float,
        radius: float,
        shape: str,
        mode: str,
    ) -> None:
        self._evaluate(
            "([x, y, field, value, radius, shape, mode]) => "
            "window.VPDE.applyBrush(x, y, field, value, radius, shape, mode)",
            [x, y, field, value, radius, shape, mode],
        )

    def clear(self) -> None:
        self._process.call(lambda: self._page.goto("about:blank"))

    def close(self) -> None:
        self._process.call(self._page.close)

    def _evaluate(self, expression: str, arg: Any = None) -> Any:
        return self._process.call(lambda: self._page.evaluate(expression, arg))


class PlaywrightRendererProcess:
    def __init__(self, config: PlaywrightConfig):
        self.config = config
        self.html_url = config.html_path.resolve().as_uri()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="datagen-chromium")
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        try:
            self.call(self._launch, timeout=config.launch_timeout_s)
        except DatagenError:
            # A timed out launch keeps running on the call thread; close
            # whatever it eventually starts once it finishes.
            self._executor.submit(self._close_browser)
            self._executor.shutdown(wait=False)
            raise

    def call(self, fn: Callable[[], T], timeout: float | None = None) -> T:
        limit = self.config.call_timeout_s if timeout is None else timeout
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=limit)
        except FutureTimeout as exc:
            future.cancel()
            raise RemoteCallFailure(f"renderer call timed out after {limit:.1f}s") from exc
        except DatagenError:
            raise
        except Exception as exc:
            raise RemoteCallFailure(f"renderer call failed: {exc}") from exc

    def open_session(self) -> PlaywrightSession:
        return PlaywrightSession(self, self.call(self._new_page))

    def terminate(self) -> None:
        try:
            self.call(self._close_browser)
        finally:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _launch(self) -> None:
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(
            headless=self.config.headless,
            args=self.config.launch_args(),
        )

    def _new_page(self) -> Page:
        if self._browser is None:
            raise RemoteCallFailure("browser is not running")
        page = self._browser.new_page(
            viewport={"width": self.config.width, "height": self.config.height},
            device_scale_factor=1,
        )
        page.add_init_script(READINESS_BRIDGE)
        page.on("console", self._on_console)
        page.on("pageerror", lambda error: LOGGER.error("[page error] %s", error))
        return page

    def _close_browser(self) -> None:
        try:
            if self._browser is not None:
                self._browser.close()
        finally:
            self._browser = None
            if self._playwright is not None:
                self._playwright.stop()
                self._playwright = None

    @staticmethod
    def _on_console(message: Any) -> None:
        if message.type in ("error", "warning"):
            LOGGER.warning("[page %s] %s", message.type, message.text)


def playwright_launcher(config: PlaywrightConfig) -> Callable[[], PlaywrightRendererProcess]:
    def _launch() -> PlaywrightRendererProcess:
        return PlaywrightRendererProcess(config)

    return _launch
