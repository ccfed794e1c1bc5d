"""Icon representation policy and the generic glyph catalogue.

Priority for every icon or graphic:
  1. anything branded, custom or artistic -> pixel extraction (crop)
  2. otherwise a clean vector outline    -> inline SVG
  3. only the closed generic set         -> named library glyph
Ambiguity never falls through to the library glyph.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

# 24x24 stroke paths; the only names a library reference may use
GENERIC_GLYPHS: Dict[str, str] = {
    "chevron-down": "m6 9 6 6 6-6",
    "chevron-up": "m18 15-6-6-6 6",
    "chevron-left": "m15 18-6-6 6-6",
    "chevron-right": "m9 18 6-6-6-6",
    "close": "M18 6 6 18M6 6l12 12",
    "check": "M20 6 9 17l-5-5",
    "plus": "M5 12h14M12 5v14",
    "search": "m21 21-4.3-4.3M11 19a8 8 0 1 0 0-16 8 8 0 0 0 0 16z",
    "menu": "M4 6h16M4 12h16M4 18h16",
}

_ALIASES = {
    "chevron": "chevron-down",
    "x": "close",
    "times": "close",
    "cross": "close",
    "dismiss": "close",
    "tick": "check",
    "checkmark": "check",
    "add": "plus",
    "magnifier": "search",
    "magnifying-glass": "search",
    "hamburger": "menu",
}

_CUSTOM_STYLES = {"branded", "brand", "custom", "artistic", "illustrated", "gradient", "logo", "photo"}


def normalize_glyph(name: Optional[str]) -> Optional[str]:
    """Map an icon name onto a catalogue key, or None when it is not generic."""
    if not name:
        return None
    key = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "-", str(name).strip())
    key = re.sub(r"[\s_]+", "-", key).lower()
    key = re.sub(r"^icon-|-icon$", "", key)
    key = _ALIASES.get(key, key)
    return key if key in GENERIC_GLYPHS else None


def has_custom_cues(payload: Dict[str, Any]) -> bool:
    if any(payload.get(flag) is True for flag in ("hasCustomVisual", "isBranded", "branded", "isLogo", "artistic")):
        return True
    if str(payload.get("extractionAction", "")).lower() == "crop":
        return True
    if str(payload.get("iconStyle", "")).lower() in _CUSTOM_STYLES:
        return True
    ident = f"{payload.get('id', '')} {payload.get('iconName', '')}".lower()
    return "logo" in ident or "brand" in ident


@dataclass(frozen=True)
class IconDecision:
    kind: Literal["asset", "svg", "library"]
    bounds: Optional[Dict[str, Any]] = None
    path: Optional[str] = None
    view_box: str = "0 0 24 24"
    color: Optional[str] = None
    name: Optional[str] = None


def decide_icon(payload: Dict[str, Any]) -> Optional[IconDecision]:
    """Pick the representation for the icon carried by a raw surveyor node."""
    name = payload.get("iconName")
    svg = payload.get("iconSvgPath")
    bounds = payload.get("extractionBounds") or payload.get("iconBounds") or payload.get("bounds")
    if not isinstance(bounds, dict):
        bounds = None
    if not (payload.get("hasIcon") or name or svg):
        return None

    view_box = str(payload.get("iconViewBox") or "0 0 24 24")
    color = payload.get("iconColor")
    glyph = normalize_glyph(name)
    custom = has_custom_cues(payload) or (bool(name) and glyph is None)

    if custom:
        if bounds:
            return IconDecision(kind="asset", bounds=bounds, name=name)
        if svg:
            return IconDecision(kind="svg", path=str(svg), view_box=view_box, color=color)
        return None
    if svg:
        return IconDecision(kind="svg", path=str(svg), view_box=view_box, color=color)
    if glyph:
        return IconDecision(kind="library", name=glyph, color=color)
    if bounds:
        return IconDecision(kind="asset", bounds=bounds, name=name)
    return None
