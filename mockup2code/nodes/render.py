"""Rasterising generated documents for critique."""

from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from PIL import Image, ImageColor, ImageDraw

from .. import imaging
from ..errors import RenderError
from ..schema import Canvas

logger = logging.getLogger(__name__)


class Renderer(Protocol):
    def render(self, source: str, canvas: Canvas) -> bytes: ...


class PlaywrightRenderer:
    """Headless Chromium screenshot sized to the manifest canvas.

    With ``base_dir`` the document is written to a scratch file there and
    opened through its ``file://`` URI, so relative asset handles load the
    same way they do from the archived ``final.html``.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        device_scale_factor: float = 1.0,
        base_dir: Optional[str] = None,
    ) -> None:
        self.timeout_ms = int(timeout_seconds * 1000)
        self.device_scale_factor = device_scale_factor
        self.base_dir = base_dir

    def render(self, source: str, canvas: Canvas) -> bytes:
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import sync_playwright

        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True)
                try:
                    ctx = browser.new_context(
                        viewport={"width": canvas.width, "height": canvas.height},
                        device_scale_factor=self.device_scale_factor,
                    )
                    page = ctx.new_page()
                    self._load(page, source)
                    png = page.screenshot(full_page=True, type="png", timeout=self.timeout_ms)
                    ctx.close()
                finally:
                    browser.close()
        except PlaywrightError as e:
            raise RenderError(f"playwright render failed: {e}") from e
        logger.debug("rendered %d bytes at %dx%d", len(png), canvas.width, canvas.height)
        return png

    def _load(self, page, source: str) -> None:
        if not self.base_dir:
            page.set_content(source, wait_until="load", timeout=self.timeout_ms)
            return
        Path(self.base_dir).mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", suffix=".html", prefix=".render_", dir=self.base_dir, delete=False, encoding="utf-8"
        ) as fh:
            fh.write(source)
        scratch = Path(fh.name)
        try:
            page.goto(scratch.resolve().as_uri(), wait_until="load", timeout=self.timeout_ms)
        finally:
            scratch.unlink(missing_ok=True)


_BODY_BG = re.compile(r"body\s*\{[^}]*background(?:-color)?\s*:\s*([^;}]+)", re.IGNORECASE)
_ELEMENT = re.compile(r'<\w+[^>]*\bdata-id="[^"]+"[^>]*>', re.IGNORECASE)
_STYLE = re.compile(r'\bstyle="([^"]*)"', re.IGNORECASE)
_BG = re.compile(r"background-color\s*:\s*([^;]+)", re.IGNORECASE)


class PlaceholderRenderer:
    """Offline stand-in: paints the body background plus one band per colored element."""

    def render(self, source: str, canvas: Canvas) -> bytes:
        if "<html" not in source.lower():
            raise RenderError("source is not an HTML document")
        img = Image.new("RGB", (canvas.width, canvas.height), _color(_first(_BODY_BG, source), canvas.background))
        bands = self._bands(source)
        if bands:
            draw = ImageDraw.Draw(img)
            step = max(1, canvas.height // (len(bands) + 1))
            for i, color in enumerate(bands):
                top = (i + 1) * step - step // 2
                draw.rectangle((canvas.width // 12, top, canvas.width - canvas.width // 12, top + step // 2), fill=color)
        return imaging.encode_png(img)

    @staticmethod
    def _bands(source: str) -> List[Tuple[int, int, int]]:
        out: List[Tuple[int, int, int]] = []
        for match in _ELEMENT.finditer(source):
            style = _first(_STYLE, match.group(0))
            bg = _first(_BG, style.replace("&quot;", '"'))
            if bg:
                out.append(_color(bg, "#d9dde3"))
        return out[:24]


def _first(pattern: re.Pattern, text: str) -> str:
    m = pattern.search(text)
    return m.group(1).strip().replace("!important", "").strip() if m else ""


def _color(value: str, default: str) -> Tuple[int, int, int]:
    for candidate in (value, default, "#ffffff"):
        try:
            return ImageColor.getrgb(candidate)[:3]
        except ValueError:
            continue
    return (255, 255, 255)


def get_renderer(kind: str = "playwright", timeout_seconds: float = 30.0, base_dir: Optional[str] = None) -> Renderer:
    if kind == "placeholder":
        return PlaceholderRenderer()
    if kind == "playwright":
        return PlaywrightRenderer(timeout_seconds=timeout_seconds, base_dir=base_dir)
    raise ValueError(f"Unsupported renderer={kind}")
