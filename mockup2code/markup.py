"""Deterministic manifest -> HTML rendering.

Used as the offline stand-in for the assembly model and as the reference for
how shaped+textured elements are expressed in CSS.
"""

from __future__ import annotations

import html
import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .icons import GENERIC_GLYPHS
from .schema import AssetIcon, DomNode, InteractionStates, LibraryIcon, ResolvedAsset, SvgIcon, VisualManifest

# objectBoundingBox silhouettes (0..1 units) for real-world objects
SHAPES: Dict[str, str] = {
    "cloud": (
        "M0.22,0.85 C0.08,0.85 0,0.74 0,0.6 C0,0.46 0.1,0.36 0.23,0.37 "
        "C0.26,0.18 0.4,0.05 0.56,0.07 C0.72,0.08 0.83,0.22 0.84,0.38 "
        "C0.94,0.4 1,0.5 1,0.62 C1,0.75 0.9,0.85 0.78,0.85 Z"
    ),
    "stone": (
        "M0.12,0.3 C0.2,0.08 0.55,0 0.78,0.1 C0.95,0.18 1,0.42 0.96,0.62 "
        "C0.9,0.86 0.62,1 0.36,0.96 C0.12,0.92 0,0.72 0.03,0.52 C0.05,0.42 0.08,0.36 0.12,0.3 Z"
    ),
    "leaf": "M0.5,0 C0.85,0.15 1,0.45 0.9,0.75 C0.8,0.95 0.6,1 0.5,1 C0.4,1 0.2,0.95 0.1,0.75 C0,0.45 0.15,0.15 0.5,0 Z",
    "bubble": "M0.5,0 C0.78,0 1,0.22 1,0.5 C1,0.78 0.78,1 0.5,1 C0.22,1 0,0.78 0,0.5 C0,0.22 0.22,0 0.5,0 Z",
}
_SHAPE_ALIASES = {"rock": "stone", "pebble": "stone", "boulder": "stone", "drop": "bubble", "ball": "bubble", "orb": "bubble"}

_TAGS = {
    "container": "div",
    "div": "div",
    "section": "section",
    "header": "header",
    "footer": "footer",
    "nav": "nav",
    "button": "button",
    "text": "p",
    "p": "p",
    "span": "span",
    "label": "label",
    "link": "a",
    "a": "a",
    "image": "img",
    "img": "img",
    "input": "input",
    "svg": "span",
    "icon": "span",
}
_VOID = {"img", "input"}

_BASE_CSS = """\
* { box-sizing: border-box; margin: 0; padding: 0; }
img { display: block; max-width: 100%; }
.m2c-icon { display: inline-block; width: 1.25em; height: 1.25em; vertical-align: middle; object-fit: contain; }
.m2c-icon-missing { background: currentColor; opacity: 0.35; border-radius: 4px; }
.m2c-shape-wrap { display: inline-block; filter: drop-shadow(0 10px 14px rgba(0,0,0,0.28)) drop-shadow(0 2px 3px rgba(0,0,0,0.2)); transition: filter 0.2s ease; }
.m2c-shape-wrap:focus-within { filter: drop-shadow(0 0 4px #3b82f6) drop-shadow(0 10px 14px rgba(0,0,0,0.28)); }
.m2c-shaped { cursor: pointer; border: none; background-size: cover; background-position: center; background-repeat: no-repeat; transition: transform 0.15s ease, filter 0.15s ease; box-shadow: inset 0 6px 12px rgba(255,255,255,0.55), inset 0 -8px 14px rgba(0,0,0,0.25); }
.m2c-shaped:hover { transform: translateY(-2px) scale(1.02); filter: brightness(1.06); }
.m2c-shaped:active { transform: scale(0.97); filter: brightness(0.95); }
.m2c-shaped:focus-visible { outline: none; }
"""


def css_name(prop: str) -> str:
    """``backgroundColor`` -> ``background-color``; vendor ``WebkitX`` -> ``-webkit-x``."""
    prop = prop.strip()
    if prop.startswith("--") or "-" in prop:
        return prop.lower() if not prop.startswith("--") else prop
    name = re.sub(r"(?<!^)(?=[A-Z])", "-", prop).lower()
    if prop[:1].isupper():
        name = "-" + name
    return name


def declarations(styles: Mapping[str, str], important: bool = False) -> str:
    suffix = " !important" if important else ""
    return "; ".join(f"{css_name(k)}: {v}{suffix}" for k, v in styles.items() if str(v).strip())


def shape_for(looks_like: str) -> str:
    key = looks_like.strip().lower().split()[-1] if looks_like.strip() else "stone"
    key = _SHAPE_ALIASES.get(key, key)
    return key if key in SHAPES else "stone"


def approximation_fill(base: str) -> str:
    """Layered gradients standing in for an unresolved material image."""
    return (
        "radial-gradient(circle at 30% 25%, rgba(255,255,255,0.85), rgba(255,255,255,0) 45%), "
        "radial-gradient(circle at 70% 80%, rgba(0,0,0,0.18), rgba(0,0,0,0) 55%), "
        f"linear-gradient(160deg, {base}, {base})"
    )


class _Renderer:
    def __init__(self, assets: Mapping[str, ResolvedAsset]) -> None:
        self.assets = assets
        self.rules: List[str] = []
        self.shapes: set[str] = set()

    def asset(self, name: Optional[str]) -> Optional[ResolvedAsset]:
        if not name:
            return None
        found = self.assets.get(name)
        return found if found is not None and found.resolved else None

    def node(self, node: DomNode, depth: int = 0) -> str:
        tag = _TAGS.get(node.type.lower(), "div")
        if re.fullmatch(r"h[1-6]", node.type.lower()):
            tag = node.type.lower()
        if node.states is not None and not node.states.is_empty():
            self._state_rules(node.id, node.states)
        if node.looks_like:
            return self._shaped(node, tag)

        styles = dict(node.styles)
        attrs = [f'data-id="{html.escape(node.id)}"']
        bound = self.asset(node.asset)
        if node.asset:
            attrs.append(f'data-asset="{html.escape(node.asset)}"')
        if tag == "img":
            if bound is not None:
                attrs.append(f'src="{html.escape(bound.handle or "")}"')
                attrs.append(f'alt="{html.escape(node.text or node.id)}"')
                return f"<img {' '.join(attrs)} style=\"{html.escape(declarations(styles))}\">"
            # unresolved image: keep the footprint with a neutral fill
            tag = "div"
            styles.setdefault("backgroundImage", approximation_fill(styles.get("backgroundColor", "#d9dde3")))
        elif bound is not None:
            styles["backgroundImage"] = f'url("{bound.handle}")'
            if bound.fill == "texture":
                styles.setdefault("backgroundRepeat", "repeat")
            else:
                styles.setdefault("backgroundSize", "cover")
                styles.setdefault("backgroundPosition", "center")
        if tag == "button" or node.type.lower() == "button":
            attrs.append('type="button"')

        inner = self._inner(node, depth)
        if tag in _VOID:
            return f"<{tag} {' '.join(attrs)} style=\"{html.escape(declarations(styles))}\">"
        return f"<{tag} {' '.join(attrs)} style=\"{html.escape(declarations(styles))}\">{inner}</{tag}>"

    def _inner(self, node: DomNode, depth: int) -> str:
        parts: List[str] = []
        if node.icon is not None:
            parts.append(self._icon(node))
        if node.text:
            parts.append(html.escape(node.text))
        parts.extend(self.node(child, depth + 1) for child in node.children)
        return "".join(parts)

    def _icon(self, node: DomNode) -> str:
        icon = node.icon
        if isinstance(icon, AssetIcon):
            bound = self.asset(icon.asset)
            if bound is None:
                return f'<span class="m2c-icon m2c-icon-missing" data-asset="{html.escape(icon.asset)}"></span>'
            return f'<img class="m2c-icon" data-asset="{html.escape(icon.asset)}" src="{html.escape(bound.handle or "")}" alt="">'
        if isinstance(icon, SvgIcon):
            color = html.escape(icon.color or "currentColor")
            return (
                f'<svg class="m2c-icon" viewBox="{html.escape(icon.view_box)}" fill="{color}" aria-hidden="true">'
                f'<path d="{html.escape(icon.path)}"/></svg>'
            )
        if isinstance(icon, LibraryIcon):
            path = GENERIC_GLYPHS.get(icon.name, "")
            handle = f"library:{icon.name}"
            owner = next((a.name for a in self.assets.values() if a.handle == handle), None)
            marker = f' data-asset="{html.escape(owner)}"' if owner else ""
            return (
                f'<svg class="m2c-icon"{marker} viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" '
                f'stroke-linecap="round" stroke-linejoin="round" aria-hidden="true"><path d="{html.escape(path)}"/></svg>'
            )
        return ""

    def _shaped(self, node: DomNode, tag: str) -> str:
        """Silhouette + material fill + depth + interactive affordances."""
        shape = shape_for(node.looks_like or "")
        self.shapes.add(shape)
        styles = {k: v for k, v in node.styles.items() if k not in ("backgroundColor", "background")}
        styles["clipPath"] = f"url(#m2c-shape-{shape})"
        styles.setdefault("minWidth", "120px")
        styles.setdefault("minHeight", "64px")
        bound = self.asset(node.asset)
        if bound is not None:
            styles["backgroundImage"] = f'url("{bound.handle}")'
            styles["backgroundSize"] = "cover"
        else:
            base = node.styles.get("backgroundColor") or node.styles.get("background") or "#d9dde3"
            styles["backgroundImage"] = approximation_fill(base)

        attrs = [f'data-id="{html.escape(node.id)}"', 'class="m2c-shaped"']
        if node.asset:
            attrs.append(f'data-asset="{html.escape(node.asset)}"')
        if tag == "button":
            attrs.append('type="button"')
        else:
            attrs.append('role="button" tabindex="0"')
        label = node.text or node.looks_like or node.id
        attrs.append(f'aria-label="{html.escape(label)}"')
        inner = self._inner(node, 0)
        el_tag = "div" if tag in _VOID else tag
        return (
            f'<span class="m2c-shape-wrap"><{el_tag} {" ".join(attrs)} '
            f'style="{html.escape(declarations(styles))}">{inner}</{el_tag}></span>'
        )

    def _state_rules(self, node_id: str, states: InteractionStates) -> None:
        sel = f'[data-id="{node_id}"]'
        for pseudo, styles in (("hover", states.hover), ("active", states.active), ("focus-visible", states.focus)):
            if styles:
                self.rules.append(f"{sel}:{pseudo} {{ {declarations(styles)} }}")
        if states.disabled:
            self.rules.append(f'{sel}:disabled, {sel}[aria-disabled="true"] {{ {declarations(states.disabled)} }}')

    def shape_defs(self) -> str:
        if not self.shapes:
            return ""
        paths = "".join(
            f'<clipPath id="m2c-shape-{name}" clipPathUnits="objectBoundingBox"><path d="{SHAPES[name]}"/></clipPath>'
            for name in sorted(self.shapes)
        )
        return f'<svg width="0" height="0" style="position:absolute" aria-hidden="true"><defs>{paths}</defs></svg>'


def render_document(
    manifests: Sequence[VisualManifest],
    assets: Optional[Mapping[str, ResolvedAsset]] = None,
    title: str = "Generated UI",
) -> str:
    renderer = _Renderer(assets or {})
    canvas = manifests[0].canvas if manifests else None
    width = canvas.width if canvas else 1440
    height = canvas.height if canvas else 900
    background = canvas.background if canvas else "#ffffff"

    sections = [
        f'<section data-manifest="{m.file_index}">{renderer.node(m.root)}</section>' for m in manifests
    ]
    css = _BASE_CSS + (
        f"body {{ width: {width}px; min-height: {height}px; background: {background}; "
        "font-family: Inter, -apple-system, 'Segoe UI', sans-serif; }\n"
    )
    css += "\n".join(renderer.rules)
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n<head>\n<meta charset="utf-8">\n'
        '<meta name="viewport" content="width=device-width, initial-scale=1">\n'
        f"<title>{html.escape(title)}</title>\n<style>\n{css}\n</style>\n</head>\n<body>\n"
        f"{renderer.shape_defs()}\n" + "\n".join(sections) + "\n</body>\n</html>\n"
    )


def referenced_assets(source: str, assets: Iterable[ResolvedAsset]) -> set[str]:
    """Names of resolved assets that the source actually binds."""
    used: set[str] = set()
    for a in assets:
        if not a.resolved:
            continue
        marker = f'data-asset="{a.name}"'
        if marker in source and (a.handle in source or a.mode == "library"):
            used.add(a.name)
        elif a.handle and a.mode != "library" and a.handle in source:
            used.add(a.name)
    return used
