"""Pillow helpers: decoding, measuring, cropping and local pixel comparison."""

from __future__ import annotations

import base64
import hashlib
import io
import math
import os
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageChops, ImageDraw, ImageFilter, ImageOps, ImageStat, UnidentifiedImageError

from .errors import InvalidCropBounds, ReferenceDecodeError
from .schema import Bounds, Canvas, ReferenceImage


def open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise ReferenceDecodeError(f"cannot decode image: {e}") from e
    return img


def open_reference(ref: ReferenceImage) -> Image.Image:
    return open_image(ref.data)


def measure_canvas(ref: ReferenceImage) -> Canvas:
    """Canvas from the actual pixel size; fallback canvas when undecodable."""
    try:
        img = open_reference(ref)
    except ReferenceDecodeError:
        return Canvas()
    width, height = img.size
    if width <= 0 or height <= 0:
        return Canvas()
    return Canvas(width=width, height=height, background=dominant_edge_color(img), source="measured")


def dominant_edge_color(img: Image.Image) -> str:
    rgb = img.convert("RGB")
    w, h = rgb.size
    corners = [(0, 0), (w - 1, 0), (0, h - 1), (w - 1, h - 1)]
    counts: dict[Tuple[int, int, int], int] = {}
    for xy in corners:
        px = rgb.getpixel(xy)
        counts[px] = counts.get(px, 0) + 1
    r, g, b = max(counts.items(), key=lambda kv: kv[1])[0]
    return f"#{r:02x}{g:02x}{b:02x}"


def crop_box(width: int, height: int, bounds: Bounds) -> Tuple[int, int, int, int]:
    """Percent bounds -> pixel box ``(left, top, right, bottom)`` inside the image.

    Each edge is ``round(percent * dimension / 100)``; the box is then clamped
    to the image. NaN values or an empty box after clamping are rejected.
    """
    values = (bounds.top, bounds.left, bounds.width, bounds.height)
    if any(math.isnan(v) or math.isinf(v) for v in values):
        raise InvalidCropBounds(f"non-finite crop bounds: {bounds}")
    if bounds.width <= 0 or bounds.height <= 0:
        raise InvalidCropBounds(f"zero-area crop bounds: {bounds}")

    left = round(bounds.left * width / 100)
    top = round(bounds.top * height / 100)
    right = left + round(bounds.width * width / 100)
    bottom = top + round(bounds.height * height / 100)

    left, right = max(0, min(left, width)), max(0, min(right, width))
    top, bottom = max(0, min(top, height)), max(0, min(bottom, height))
    if right - left <= 0 or bottom - top <= 0:
        raise InvalidCropBounds(f"crop bounds fall outside the image: {bounds}")
    return left, top, right, bottom


def crop_png(ref: ReferenceImage, bounds: Bounds) -> bytes:
    img = open_reference(ref)
    box = crop_box(img.width, img.height, bounds)
    region = img.crop(box)
    if region.mode not in ("RGB", "RGBA"):
        region = region.convert("RGBA")
    return encode_png(region)


def enhance_for_analysis(ref: ReferenceImage, min_dimension: int = 1920) -> ReferenceImage:
    """Upscale small references before vision analysis.

    The longest edge is brought up to ``min_dimension`` with Lanczos
    resampling and a light unsharp mask. Large references, a zero
    ``min_dimension`` and undecodable data come back unchanged. Only the
    analysis call sees the result; crops keep using the original pixels.
    """
    if min_dimension <= 0:
        return ref
    try:
        img = open_reference(ref)
    except ReferenceDecodeError:
        return ref
    longest = max(img.size)
    if longest <= 0 or longest >= min_dimension:
        return ref

    scale = min_dimension / longest
    size = (max(1, round(img.width * scale)), max(1, round(img.height * scale)))
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    enlarged = img.resize(size, Image.LANCZOS).filter(ImageFilter.UnsharpMask(radius=1, percent=60, threshold=2))
    return ReferenceImage(data=encode_png(enlarged), mime_type="image/png", name=ref.name)


def encode_png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG", optimize=False)
    return buf.getvalue()


def data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def store_png(data: bytes, directory: Optional[str], stem: str, root: Optional[str] = None) -> str:
    """Write bytes under a content-addressed name; data URL when no directory.

    With ``root`` the handle is the POSIX path relative to it, so a document
    saved in ``root`` can load the file.
    """
    if not directory:
        return data_url(data)
    digest = hashlib.sha1(data).hexdigest()[:12]
    out = Path(directory) / f"{stem}_{digest}.png"
    out.parent.mkdir(parents=True, exist_ok=True)
    if not out.exists():
        out.write_bytes(data)
    if root:
        return Path(os.path.relpath(out, root)).as_posix()
    return str(out)


# ------------------------------------------------------------------ local critique


def similarity(snapshot: bytes, reference: bytes, size: Tuple[int, int] = (256, 256)) -> Tuple[float, float, float]:
    """Return ``(overall, color, layout)`` in [0, 1].

    Color compares per-pixel RGB difference; layout compares edge maps, which
    is insensitive to flat color shifts but not to moved boxes.
    """
    a = open_image(snapshot).convert("RGB").resize(size)
    b = open_image(reference).convert("RGB").resize(size)

    diff = ImageChops.difference(a, b)
    color = 1.0 - (sum(ImageStat.Stat(diff).mean) / (3 * 255.0))

    ea = ImageOps.grayscale(a).filter(ImageFilter.FIND_EDGES)
    eb = ImageOps.grayscale(b).filter(ImageFilter.FIND_EDGES)
    layout = 1.0 - (ImageStat.Stat(ImageChops.difference(ea, eb)).mean[0] / 255.0)

    overall = 0.5 * color + 0.5 * layout
    return _unit(overall), _unit(color), _unit(layout)


def _unit(v: float) -> float:
    return float(max(0.0, min(1.0, v)))


# ------------------------------------------------------------------ placeholders


def placeholder_object(prompt: str, size: int = 512) -> Image.Image:
    """Full-object stand-in: shaded ellipse with a cast shadow on white."""
    seed = int(hashlib.sha1(prompt.encode("utf-8")).hexdigest()[:6], 16)
    base = (120 + seed % 100, 120 + (seed >> 8) % 100, 120 + (seed >> 16) % 100)
    img = Image.new("RGB", (size, size), (255, 255, 255))
    draw = ImageDraw.Draw(img)
    pad = size // 8
    draw.ellipse((pad + 12, pad + 24, size - pad + 12, size - pad + 24), fill=(205, 205, 205))
    for i in range(pad, size // 2, 4):
        t = (i - pad) / max(1, size // 2 - pad)
        shade = tuple(min(255, int(c + 90 * t)) for c in base)
        draw.ellipse((i, i, size - i, size - i), fill=shade)
    return img


def placeholder_texture(prompt: str, size: int = 256) -> Image.Image:
    """Seamless stand-in: a tile whose opposite edges match."""
    seed = int(hashlib.sha1(prompt.encode("utf-8")).hexdigest()[:6], 16)
    img = Image.new("RGB", (size, size))
    px = img.load()
    for y in range(size):
        for x in range(size):
            v = math.sin(2 * math.pi * x / size * 3) + math.cos(2 * math.pi * y / size * 2)
            g = int(160 + 40 * v) & 255
            px[x, y] = ((g + seed) % 256, (g + (seed >> 8)) % 256, (g + (seed >> 16)) % 256)
    return img
