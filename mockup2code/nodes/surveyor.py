"""Reference image -> VisualManifest.

The surveyor never raises. Any upload, timeout, extraction or validation
problem degrades to ``VisualManifest.minimal`` sized to the measured canvas.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .. import imaging
from ..config import SurveyConfig
from ..icons import decide_icon
from ..llm.calls import bounded_call
from ..llm.gemini import call_gemini
from ..llm.parsing import extract_json_object
from ..prompts import build_survey_prompt
from ..schema import Canvas, ReferenceImage, VisualManifest
from ..state import AppState

logger = logging.getLogger(__name__)

_IMAGE_TYPES = {"img", "image", "picture", "photo", "logo", "avatar"}
_STATE_KEYS = {"hover": "hover", "active": "active", "focus": "focus", "focused": "focus", "disabled": "disabled"}


def run(state: AppState) -> AppState:
    if state.get("manifests"):
        return state
    cfg = state["config"].survey if state.get("config") else SurveyConfig()
    state["manifests"] = survey_batch(state.get("references", []), config=cfg)
    return state


def survey_batch(
    images: Sequence[ReferenceImage],
    *,
    config: Optional[SurveyConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> List[VisualManifest]:
    """Survey every reference in parallel; output order matches input order."""
    cfg = config or SurveyConfig()
    if not images:
        return []
    max_workers = max(1, min(len(images), cfg.max_workers))
    with ThreadPoolExecutor(max_workers=max_workers) as ex:
        futures = [ex.submit(survey_reference, img, i, config=cfg, cancel=cancel) for i, img in enumerate(images)]
        return [fut.result() for fut in futures]


def survey_reference(
    image: ReferenceImage,
    index: int = 0,
    *,
    config: Optional[SurveyConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> VisualManifest:
    cfg = config or SurveyConfig()
    canvas = imaging.measure_canvas(image)
    if canvas.source == "fallback":
        logger.warning("survey[%d]: %s could not be measured, using %dx%d", index, image.name, canvas.width, canvas.height)
    prompt = build_survey_prompt(canvas)
    analysed = _enhanced(image, index, cfg.min_image_dimension)

    result = bounded_call(
        lambda: call_gemini(
            "survey",
            reference=analysed,
            canvas=canvas,
            prompt=prompt,
            timeout=cfg.timeout_seconds,
            upload_wait=cfg.upload_wait_seconds,
            poll_interval=cfg.poll_interval_seconds,
        ),
        timeout=cfg.timeout_seconds + cfg.upload_wait_seconds,
        retries=cfg.retries,
        cancel=cancel,
        label=f"survey[{index}]",
    )
    if not result.ok or not isinstance(result.value, dict):
        logger.warning("survey[%d]: %s, falling back to minimal manifest", index, result.error or result.status.value)
        return VisualManifest.minimal(index, canvas)

    try:
        payload = extract_json_object(result.value.get("text", ""))
        manifest = manifest_from_payload(payload, index, canvas)
    except (ValueError, TypeError, AttributeError, RecursionError, ValidationError) as e:
        logger.warning("survey[%d]: unusable manifest (%s), falling back to minimal manifest", index, e)
        return VisualManifest.minimal(index, canvas)

    logger.info(
        "survey[%d]: %d nodes, %d asset requests",
        index,
        sum(1 for _ in manifest.walk()),
        len(manifest.assets),
    )
    return manifest


def _enhanced(image: ReferenceImage, index: int, min_dimension: int) -> ReferenceImage:
    try:
        enhanced = imaging.enhance_for_analysis(image, min_dimension)
    except (OSError, ValueError) as e:
        logger.warning("survey[%d]: enhancement failed (%s), sending the original", index, e)
        return image
    if enhanced is not image:
        logger.debug("survey[%d]: upscaled %s for analysis", index, image.name)
    return enhanced


def manifest_from_payload(payload: Dict[str, Any], index: int, measured: Canvas) -> VisualManifest:
    """Normalise a raw model payload into a validated manifest.

    Icon decisions are re-applied here regardless of what the model chose, node
    ids and asset names are made unique, and image-like nodes are bound to crop
    requests.
    """
    canvas = _canvas(payload.get("canvas"), measured)
    raw_root = payload.get("dom_tree") or payload.get("domTree") or payload.get("root")
    if not isinstance(raw_root, dict):
        raise ValueError("payload has no dom_tree object")

    builder = _TreeBuilder(index)
    root = builder.node(raw_root)
    builder.bind_needed(payload.get("assets_needed") or payload.get("assetsNeeded") or [])
    return VisualManifest.model_validate(
        {"file_index": index, "canvas": canvas, "root": root, "assets": builder.requests}
    )


def _canvas(raw: Any, measured: Canvas) -> Canvas:
    if measured.source == "measured":
        background = measured.background
        if isinstance(raw, dict) and isinstance(raw.get("background"), str) and raw["background"].strip():
            background = raw["background"].strip()
        return measured.model_copy(update={"background": background})
    if isinstance(raw, dict):
        try:
            return Canvas(
                width=int(raw.get("width") or measured.width),
                height=int(raw.get("height") or measured.height),
                background=str(raw.get("background") or measured.background),
                source="fallback",
            )
        except (TypeError, ValueError, ValidationError):
            logger.debug("ignoring invalid canvas %r", raw)
    return measured


def _bounds(raw: Any) -> Optional[Dict[str, float]]:
    if not isinstance(raw, dict):
        return None
    try:
        return {k: float(raw[k]) for k in ("top", "left", "width", "height")}
    except (KeyError, TypeError, ValueError):
        return None


def _styles(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None and not isinstance(v, (dict, list))}


class _TreeBuilder:
    def __init__(self, index: int) -> None:
        self.index = index
        self.requests: List[Dict[str, Any]] = []
        self.nodes: Dict[str, Dict[str, Any]] = {}
        self.raw_ids: Dict[str, str] = {}
        self._counter = 0

    def _unique_id(self, raw_id: Any) -> str:
        raw = str(raw_id).strip() if raw_id not in (None, "") else ""
        base = raw
        if not base:
            self._counter += 1
            base = f"node-{self._counter}"
        # ids and asset names stay unique across the manifests of one run
        if self.index:
            base = f"s{self.index}-{base}"
        ident, n = base, 2
        while ident in self.nodes:
            ident = f"{base}-{n}"
            n += 1
        if raw:
            self.raw_ids.setdefault(raw, ident)
        return ident

    def _asset_names(self) -> set[str]:
        return {r["name"] for r in self.requests}

    def _request(self, name: str, mode: Dict[str, Any]) -> str:
        taken = self._asset_names()
        unique, n = name, 2
        while unique in taken:
            unique = f"{name}-{n}"
            n += 1
        self.requests.append({"name": unique, "mode": mode})
        return unique

    def _crop(self, name: str, bounds: Dict[str, float]) -> str:
        return self._request(name, {"kind": "crop", "bounds": bounds, "source_index": self.index})

    def node(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        ident = self._unique_id(raw.get("id"))
        node: Dict[str, Any] = {"id": ident, "type": str(raw.get("type") or "div")}
        self.nodes[ident] = node

        styles = _styles(raw.get("styles"))
        bounds = _bounds(raw.get("bounds"))
        if bounds:
            node["bounds"] = bounds
        if raw.get("text") not in (None, ""):
            node["text"] = str(raw["text"])
        states = self._states(raw.get("interactionStates") or raw.get("states"))
        if states:
            node["states"] = states

        icon = decide_icon(raw)
        if icon is not None:
            if icon.kind == "asset":
                icon_bounds = _bounds(icon.bounds)
                if icon_bounds:
                    node["icon"] = {"kind": "asset", "asset": self._crop(f"{ident}_icon", icon_bounds)}
            elif icon.kind == "svg":
                node["icon"] = {"kind": "svg", "path": icon.path, "view_box": icon.view_box, "color": icon.color}
            else:
                asset = self._request(f"{ident}_icon", {"kind": "library", "key": icon.name})
                node["icon"] = {"kind": "library", "name": icon.name}
                logger.debug("node %s uses library glyph %s (%s)", ident, icon.name, asset)

        # pixels from the reference beat any generated or CSS approximation
        background = styles.get("backgroundImage", "")
        image_like = (
            str(node["type"]).lower() in _IMAGE_TYPES
            or raw.get("hasImage") is True
            or "url(" in background
            or (str(raw.get("extractionAction", "")).lower() == "crop" and icon is None)
        )
        crop_bounds = _bounds(raw.get("extractionBounds")) or bounds
        if image_like and crop_bounds:
            node["asset"] = self._crop(ident, crop_bounds)
            if "url(" in background:
                styles.pop("backgroundImage")

        looks_like = raw.get("looksLike") or raw.get("looks_like")
        if looks_like:
            node["looks_like"] = str(looks_like)
            if "asset" not in node:
                description = str(raw.get("materialDescription") or looks_like)
                node["asset"] = self._request(
                    f"{ident}_material", {"kind": "generate", "prompt": description, "target": "object"}
                )

        node["styles"] = styles
        children = raw.get("children") or []
        node["children"] = [self.node(c) for c in children if isinstance(c, dict)]
        return node

    def _states(self, raw: Any) -> Optional[Dict[str, Dict[str, str]]]:
        if not isinstance(raw, dict):
            return None
        out: Dict[str, Dict[str, str]] = {}
        for key, value in raw.items():
            name = _STATE_KEYS.get(str(key).lower())
            if name and isinstance(value, dict) and value:
                out[name] = _styles(value)
        return out or None

    def bind_needed(self, needed: Any) -> None:
        """Add ``assets_needed`` entries; an existing name keeps its first (crop) source."""
        if not isinstance(needed, list):
            return
        for entry in needed:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("name") or "").strip()
            description = str(entry.get("description") or entry.get("prompt") or name).strip()
            if not name or not description or name in self._asset_names():
                continue
            target = "object" if str(entry.get("kind", "")).lower() == "object" else "texture"
            if self.index:
                name = f"s{self.index}-{name}"
            if name in self._asset_names():
                continue
            self.requests.append({"name": name, "mode": {"kind": "generate", "prompt": description, "target": target}})
            node_id = str(entry.get("nodeId") or "")
            node = self.nodes.get(self.raw_ids.get(node_id, node_id))
            if node is not None and "asset" not in node:
                node["asset"] = name
