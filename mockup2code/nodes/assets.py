"""Asset requests -> resolved assets.

Every request is resolved on its own worker with no shared mutable state. A
failure is logged and returned as an unresolved asset so the builder can fall
back to a CSS approximation; it never fails the batch.
"""

from __future__ import annotations

import logging
import re
import tempfile
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from .. import imaging
from ..config import AssetConfig
from ..errors import AssetResolutionError, InvalidCropBounds, ReferenceDecodeError
from ..icons import GENERIC_GLYPHS, normalize_glyph
from ..llm.calls import bounded_call
from ..llm.gemini import call_gemini
from ..prompts import build_object_asset_prompt, build_texture_asset_prompt
from ..schema import (
    AssetRequest,
    CropSource,
    GenerateSource,
    LibrarySource,
    ReferenceImage,
    ResolvedAsset,
    VisualManifest,
)
from ..state import AppState

logger = logging.getLogger(__name__)

_HEX = re.compile(r"#[0-9a-fA-F]{6}\b|#[0-9a-fA-F]{3}\b")
_COLOR_PROPS = ("backgroundColor", "background", "color", "borderColor", "backgroundImage")


class AestheticContext(BaseModel):
    """Read-only styling hints shared by all generate requests of a run."""

    model_config = ConfigDict(frozen=True)

    color_scheme: Tuple[str, ...] = ()
    style_keywords: Tuple[str, ...] = ()

    @classmethod
    def from_manifests(cls, manifests: Iterable[VisualManifest], instruction: str = "") -> "AestheticContext":
        colors: Counter[str] = Counter()
        keywords: List[str] = []
        for m in manifests:
            colors[m.canvas.background.lower()] += 1
            for _, node in m.walk():
                for prop in _COLOR_PROPS:
                    for hit in _HEX.findall(node.styles.get(prop, "")):
                        colors[hit.lower()] += 1
                if node.looks_like and node.looks_like not in keywords:
                    keywords.append(node.looks_like)
        for word in re.findall(r"[A-Za-z][A-Za-z-]{3,}", instruction or ""):
            if word.lower() not in keywords:
                keywords.append(word.lower())
        return cls(
            color_scheme=tuple(c for c, _ in colors.most_common(4)),
            style_keywords=tuple(keywords[:6]),
        )


def run(state: AppState) -> AppState:
    manifests = state.get("manifests", [])
    cfg = state["config"].assets if state.get("config") else AssetConfig()
    context = AestheticContext.from_manifests(manifests, state.get("instruction", ""))
    state["assets"] = resolve_assets(collect_requests(manifests), state.get("references", []), context, config=cfg)
    return state


def collect_requests(manifests: Iterable[VisualManifest]) -> List[AssetRequest]:
    requests: List[AssetRequest] = []
    for m in manifests:
        requests.extend(m.assets)
    return requests


def apply_precedence(requests: Iterable[AssetRequest]) -> List[AssetRequest]:
    """One request per name; a crop beats any generated asset of the same name."""
    chosen: Dict[str, AssetRequest] = {}
    for req in requests:
        current = chosen.get(req.name)
        if current is None:
            chosen[req.name] = req
        elif isinstance(req.mode, CropSource) and not isinstance(current.mode, CropSource):
            logger.debug("asset %s: crop replaces %s source", req.name, current.mode.kind)
            chosen[req.name] = req
    return list(chosen.values())


def resolve_assets(
    requests: Sequence[AssetRequest],
    references: Sequence[ReferenceImage],
    context: Optional[AestheticContext] = None,
    *,
    config: Optional[AssetConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, ResolvedAsset]:
    cfg = config or AssetConfig()
    ctx = context or AestheticContext()
    unique = apply_precedence(requests)
    if not unique:
        return {}

    max_workers = max(1, min(len(unique), cfg.max_workers))
    with ThreadPoolExecutor(max_workers=max_workers) as ex:
        futures = [ex.submit(_resolve_safely, req, references, ctx, cfg, cancel) for req in unique]
        resolved = [fut.result() for fut in futures]

    out = {a.name: a for a in resolved}
    missing = [a.name for a in resolved if not a.resolved]
    logger.info("assets: %d resolved, %d unresolved", len(out) - len(missing), len(missing))
    return out


def _resolve_safely(
    request: AssetRequest,
    references: Sequence[ReferenceImage],
    context: AestheticContext,
    config: AssetConfig,
    cancel: Optional[threading.Event],
) -> ResolvedAsset:
    try:
        return resolve_request(request, references, context, config=config, cancel=cancel)
    except (AssetResolutionError, InvalidCropBounds, ReferenceDecodeError) as e:
        logger.warning("asset %s unresolved: %s", request.name, e)
        return ResolvedAsset.unresolved(request, str(e))
    except Exception as e:
        logger.exception("asset %s failed unexpectedly", request.name)
        return ResolvedAsset.unresolved(request, f"{type(e).__name__}: {e}")


def resolve_request(
    request: AssetRequest,
    references: Sequence[ReferenceImage],
    context: Optional[AestheticContext] = None,
    *,
    config: Optional[AssetConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> ResolvedAsset:
    """Resolve one request or raise an ``AssetResolutionError`` subclass."""
    cfg = config or AssetConfig()
    mode = request.mode
    if isinstance(mode, LibrarySource):
        return _resolve_library(request.name, mode)
    if isinstance(mode, CropSource):
        return _resolve_crop(request.name, mode, references, cfg)
    if isinstance(mode, GenerateSource):
        return _resolve_generate(request.name, mode, context or AestheticContext(), cfg, cancel)
    raise AssetResolutionError(f"unsupported asset mode for {request.name}")


def _resolve_library(name: str, mode: LibrarySource) -> ResolvedAsset:
    key = mode.key if mode.key in GENERIC_GLYPHS else normalize_glyph(mode.key)
    if key is None:
        raise AssetResolutionError(f"unknown library glyph {mode.key!r}")
    return ResolvedAsset(name=name, mode="library", fill="object", handle=f"library:{key}")


def _resolve_crop(
    name: str, mode: CropSource, references: Sequence[ReferenceImage], config: AssetConfig
) -> ResolvedAsset:
    if mode.source_index >= len(references):
        raise AssetResolutionError(f"crop {name} refers to missing reference #{mode.source_index}")
    data = imaging.crop_png(references[mode.source_index], mode.bounds)
    handle = imaging.store_png(data, config.asset_dir, _safe_stem(name), root=config.handle_root)
    return ResolvedAsset(name=name, mode="crop", fill="object", handle=handle)


def asset_prompt(mode: GenerateSource, context: AestheticContext) -> str:
    if mode.target == "object":
        return build_object_asset_prompt(mode.prompt, context.color_scheme, context.style_keywords)
    return build_texture_asset_prompt(mode.prompt, context.color_scheme, context.style_keywords)


def _resolve_generate(
    name: str,
    mode: GenerateSource,
    context: AestheticContext,
    config: AssetConfig,
    cancel: Optional[threading.Event],
) -> ResolvedAsset:
    prompt = asset_prompt(mode, context)
    with tempfile.TemporaryDirectory(prefix="m2c_gen_") as tmp:
        out_path = Path(tmp) / f"{_safe_stem(name)}.img"
        result = bounded_call(
            lambda: call_gemini(
                "image_generate",
                prompt=prompt,
                target=mode.target,
                out_path=str(out_path),
                timeout=config.timeout_seconds,
            ),
            timeout=config.timeout_seconds,
            retries=config.retries,
            cancel=cancel,
            label=f"generate[{name}]",
        )
        if not result.ok:
            raise AssetResolutionError(f"generation {result.status.value}: {result.error}")
        produced = Path(result.value.get("path") or out_path) if isinstance(result.value, dict) else out_path
        if not produced.exists():
            raise AssetResolutionError(f"generation for {name} produced no file")
        # normalise whatever the model returned to PNG
        data = imaging.encode_png(imaging.open_image(produced.read_bytes()))
    handle = imaging.store_png(data, config.asset_dir, _safe_stem(name), root=config.handle_root)
    return ResolvedAsset(name=name, mode="generate", fill=mode.target, handle=handle)


def _safe_stem(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("._") or "asset"
