"""Critique discrepancies -> minimal property patches.

A patch is a single (node, CSS property, value) correction. Patches are
applied twice: to the manifest, so later rebuilds keep them, and to the
current document as an override block keyed on ``data-id``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..markup import css_name
from ..schema import BuildArtifact, Discrepancy, DomNode, FidelityReport, VisualManifest

logger = logging.getLogger(__name__)

HEAL_BLOCK_ID = "m2c-heal"

BLOCKED_PROPERTIES = frozenset({"content", "behavior", "-moz-binding"})
UNSAFE_VALUE_MARKERS = ("expression(", "javascript:", "<", "{", "}", ";")
STRUCTURAL_ISSUES = frozenset(
    {
        "missing_element",
        "extra_element",
        "layout_mismatch",
        "structure_mismatch",
        "wrong_order",
        "content_mismatch",
        "text_mismatch",
    }
)
_TEXT_PROPERTIES = {"text", "textcontent", "innertext", "label"}
_SEVERITY_RANK = {"critical": 0, "moderate": 1, "minor": 2}

_HEAL_BLOCK = re.compile(
    rf'<style id="{HEAL_BLOCK_ID}">(.*?)</style>\s*', re.DOTALL | re.IGNORECASE
)
_HEAL_RULE = re.compile(r'^\[data-id="((?:[^"\\]|\\.)*)"\] \{ ([\w-]+): (.*) !important; \}$')


@dataclass(frozen=True)
class PropertyPatch:
    node_id: str
    node_path: str
    property: str  # manifest key, camelCase
    value: str
    severity: str = "moderate"

    @property
    def css_property(self) -> str:
        return css_name(self.property)


@dataclass(frozen=True)
class PatchPlan:
    patches: Tuple[PropertyPatch, ...] = ()
    structural: Tuple[Discrepancy, ...] = ()
    rejected: Tuple[Tuple[Discrepancy, str], ...] = field(default_factory=tuple)

    @property
    def needs_rebuild(self) -> bool:
        return bool(self.structural)


def manifest_key(prop: str) -> str:
    """``background-color`` -> ``backgroundColor``; camelCase passes through."""
    prop = prop.strip()
    if prop.startswith("--") or "-" not in prop:
        return prop
    vendor = prop.startswith("-")
    parts = prop.lstrip("-").split("-")
    key = parts[0] + "".join(p[:1].upper() + p[1:] for p in parts[1:])
    return key[:1].upper() + key[1:] if vendor else key


def is_structural(d: Discrepancy) -> bool:
    if d.issue.lower() in STRUCTURAL_ISSUES:
        return True
    prop = (d.property or "").strip().lower()
    return not prop or prop in _TEXT_PROPERTIES


def unsafe_reason(prop: str, value: str) -> Optional[str]:
    if css_name(manifest_key(prop)) in BLOCKED_PROPERTIES:
        return f"blocked property {prop}"
    lowered = value.lower().replace(" ", "")
    for marker in UNSAFE_VALUE_MARKERS:
        if marker in lowered:
            return f"unsafe value for {prop}"
    return None


def _locate(manifests: Sequence[VisualManifest], ref: str) -> Optional[Tuple[str, DomNode]]:
    for m in manifests:
        node = m.find_node(ref)
        if node is not None:
            path = next(p for p, n in m.walk() if n is node)
            return path, node
    return None


def plan_patches(
    report: FidelityReport,
    manifests: Sequence[VisualManifest],
    max_patches: int = 25,
) -> PatchPlan:
    """Order by severity, drop duplicates and unsafe values, split off structural issues."""
    ordered = sorted(report.discrepancies, key=lambda d: _SEVERITY_RANK.get(d.severity, 1))
    patches: List[PropertyPatch] = []
    structural: List[Discrepancy] = []
    rejected: List[Tuple[Discrepancy, str]] = []
    seen: set[Tuple[str, str]] = set()

    for d in ordered:
        if is_structural(d):
            structural.append(d)
            continue
        located = _locate(manifests, d.node_path)
        if located is None:
            rejected.append((d, "unknown node"))
            continue
        value = (d.expected or "").strip()
        if not value:
            rejected.append((d, "no expected value"))
            continue
        prop = manifest_key(d.property or "")
        reason = unsafe_reason(prop, value)
        if reason:
            logger.warning("rejecting patch on %s: %s", d.node_path, reason)
            rejected.append((d, reason))
            continue
        path, node = located
        key = (node.id, css_name(prop))
        if key in seen:
            continue
        if len(patches) >= max_patches:
            rejected.append((d, "patch budget exhausted"))
            continue
        seen.add(key)
        patches.append(PropertyPatch(node_id=node.id, node_path=path, property=prop, value=value, severity=d.severity))

    return PatchPlan(patches=tuple(patches), structural=tuple(structural), rejected=tuple(rejected))


def apply_to_manifest(manifests: Sequence[VisualManifest], patches: Iterable[PropertyPatch]) -> List[VisualManifest]:
    """Return patched copies; the inputs are left untouched."""
    copies = [m.model_copy(deep=True) for m in manifests]
    for patch in patches:
        for m in copies:
            node = m.find_node(patch.node_path) or m.find_node(patch.node_id)
            if node is not None:
                node.styles[patch.property] = patch.value
                break
    return copies


def _escape_id(node_id: str) -> str:
    return node_id.replace("\\", "\\\\").replace('"', '\\"')


def _unescape_id(raw: str) -> str:
    return re.sub(r"\\(.)", r"\1", raw)


def existing_overrides(source: str) -> Dict[Tuple[str, str], str]:
    block = _HEAL_BLOCK.search(source)
    rules: Dict[Tuple[str, str], str] = {}
    if not block:
        return rules
    for line in block.group(1).splitlines():
        m = _HEAL_RULE.match(line.strip())
        if m:
            rules[(_unescape_id(m.group(1)), m.group(2))] = m.group(3)
    return rules


def apply_to_source(artifact: BuildArtifact, patches: Sequence[PropertyPatch], revision: int) -> BuildArtifact:
    """New artifact whose override block carries every patch applied so far."""
    rules = existing_overrides(artifact.source)
    for patch in patches:
        rules[(patch.node_id, patch.css_property)] = patch.value
    body = "\n".join(
        f'[data-id="{_escape_id(node_id)}"] {{ {prop}: {value} !important; }}' for (node_id, prop), value in rules.items()
    )
    block = f'<style id="{HEAL_BLOCK_ID}">\n{body}\n</style>\n'

    source = _HEAL_BLOCK.sub("", artifact.source)
    head_end = re.search(r"</head\s*>", source, re.IGNORECASE)
    if head_end:
        source = source[: head_end.start()] + block + source[head_end.start() :]
    else:
        html_open = re.search(r"<html[^>]*>", source, re.IGNORECASE)
        at = html_open.end() if html_open else 0
        source = source[:at] + block + source[at:]
    return BuildArtifact(source=source, bound_assets=artifact.bound_assets, revision=revision, origin="patch")
