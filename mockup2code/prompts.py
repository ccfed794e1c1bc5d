from __future__ import annotations

import json
from typing import Iterable, List, Mapping, Optional, Sequence

from .icons import GENERIC_GLYPHS
from .schema import Canvas, ResolvedAsset


def build_survey_prompt(canvas: Optional[Canvas] = None) -> str:
    preamble = ""
    if canvas is not None and canvas.source == "measured":
        preamble = (
            f"The image is {canvas.width}px x {canvas.height}px (measured). "
            "Use these exact dimensions as the canvas size.\n\n"
        )
    generic = ", ".join(sorted(GENERIC_GLYPHS))
    return preamble + (
        "You are a UI reverse engineer. Reconstruct the exact DOM component tree of the screenshot.\n"
        "1. Structure: flex rows vs columns; group elements logically (navbar, hero, card, footer).\n"
        "2. Text: copy every visible string VERBATIM into the node's \"text\" field.\n"
        "3. Styles: exact CSS values, never descriptions. Hex colors, full linear-gradient(...) strings, "
        "exact box-shadow, backdropFilter blur, transform, clipPath, border-radius, font family/size/weight, "
        "letter-spacing, line-height, padding, margin, gap in px.\n"
        "4. Interaction: for every button, link and input infer interactionStates {hover, active, focus, disabled} "
        "as CSS property deltas.\n"
        "5. Bounds: every node carries \"bounds\" {top, left, width, height} as percentages (0-100) of the full image.\n"
        "6. Icons and graphics, STRICT PRIORITY, never skip a step:\n"
        "   (1) If the icon/graphic has ANY branded, custom, colorful or artistic styling (logos, illustrations, "
        "multi-color marks, photos), set \"hasCustomVisual\": true, \"extractionAction\": \"crop\" and give "
        "\"extractionBounds\" {top, left, width, height} in percent of the full image.\n"
        "   (2) Else, if a clean single-color vector outline is visible, emit \"iconSvgPath\" and \"iconViewBox\".\n"
        f"   (3) Only for these generic glyphs may you use \"iconName\": {generic}.\n"
        "   When unsure between (1) and (3), choose (1).\n"
        "7. Real-world objects: if an element looks like a physical object or material (cloud, stone, wood, glass), "
        "set \"looksLike\" to that object and add an entry to assets_needed.\n\n"
        "Output ONE JSON object, no prose:\n"
        "{\n"
        '  "canvas": {"width": number, "height": number, "background": string},\n'
        '  "dom_tree": {"id": string, "type": string, "styles": {...}, "text": string?, "bounds": {...},\n'
        '               "interactionStates": {...}?, "hasIcon": bool?, "hasCustomVisual": bool?,\n'
        '               "extractionAction": "crop"?, "extractionBounds": {...}?, "iconSvgPath": string?,\n'
        '               "iconViewBox": string?, "iconName": string?, "iconColor": string?, "looksLike": string?,\n'
        '               "children": [ ...recursive nodes... ]},\n'
        '  "assets_needed": [{"name": string, "description": string, "kind": "object"|"texture", "nodeId": string?}]\n'
        "}"
    )


def build_critique_prompt(components_json: str, threshold: float) -> str:
    target = int(round(threshold * 100))
    return (
        "You are a QA design engineer doing a pixel-level comparison.\n"
        "Image 1: original design reference. Image 2: current generated render.\n"
        f"Current components (ids and paths to use in corrections):\n{components_json}\n\n"
        "Return ONLY this JSON:\n"
        "{\n"
        '  "fidelityScore": <0-100>,\n'
        '  "dimensions": {"layout": <0-100>, "color": <0-100>, "typography": <0-100>, "spacing": <0-100>},\n'
        '  "overallAssessment": string,\n'
        '  "discrepancies": [{"componentId": string, "issue": snake_case string,\n'
        '                     "severity": "minor"|"moderate"|"critical", "property": camelCase CSS property or "text",\n'
        '                     "expected": string, "actual": string}],\n'
        f'  "recommendation": "accept" if fidelityScore >= {target} else "refine" or "regenerate"\n'
        "}\n"
        "Use issue types such as color_drift, spacing_error, typography_mismatch, size_mismatch, shadow_mismatch, "
        "missing_element, extra_element, content_mismatch, layout_mismatch. One discrepancy per property."
    )


def build_object_asset_prompt(description: str, colors: Sequence[str], keywords: Sequence[str]) -> str:
    # Shaped elements get masked to a silhouette later, so the whole object must be in frame.
    prompt = (
        f"A photorealistic image of a complete {description}, the ENTIRE object fully in frame and centered, "
        "isolated on a plain white background with generous margin. Natural studio lighting with a clear key "
        "light, soft cast shadow and visible surface highlights so the form reads in 3D. "
        "No cropping of the object, no text, no other objects."
    )
    return prompt + _style_suffix(colors, keywords)


def build_texture_asset_prompt(description: str, colors: Sequence[str], keywords: Sequence[str]) -> str:
    prompt = (
        f"A close-up, edge-to-edge surface texture of {description}. Macro photograph, flat even lighting, "
        "no single object, no horizon, no vignette, no text. The image must be SEAMLESS and TILEABLE: "
        "left/right and top/bottom edges continue into each other."
    )
    return prompt + _style_suffix(colors, keywords)


def _style_suffix(colors: Sequence[str], keywords: Sequence[str]) -> str:
    parts: List[str] = []
    if colors:
        parts.append(f" Color tones: {', '.join(colors[:4])}.")
    if keywords:
        parts.append(f" Style: {', '.join(keywords[:6])}.")
    return "".join(parts)


def build_assembly_prompt(
    manifests_json: str,
    assets: Mapping[str, ResolvedAsset],
    instruction: str,
    prior_source: Optional[str] = None,
    healing_note: Optional[str] = None,
) -> str:
    resolved = [a for a in assets.values() if a.resolved]
    unresolved = [a for a in assets.values() if not a.resolved]
    asset_lines = "\n".join(f'- "{a.name}" -> {a.handle} ({a.mode}, fill={a.fill})' for a in resolved) or "- (none)"
    missing_lines = "\n".join(f'- "{a.name}"' for a in unresolved) or "- (none)"

    sections = [
        "You are the UI builder. Write ONE self-contained HTML document (inline <style>, no external JS).",
        "Rules:",
        "1. Rebuild every manifest dom_tree exactly; map 'type' to tags and use the exact style values.",
        "2. Every element gets data-id=\"<node id>\". Every element that uses an asset gets data-asset=\"<asset name>\".",
        "3. Bind assets EXPLICITLY by name from the list below; never guess by position.",
        "4. Unresolved assets: approximate with CSS only (layered gradients, shadows); output must still render.",
        "5. Nodes with looksLike (real-world objects) MUST combine: a non-rectangular silhouette via clip-path; "
        "the asset as background-size: cover fill (or layered gradients when unresolved); layered shadow and "
        "highlight for depth (drop-shadow on a wrapper, inset highlights); and stay focusable and clickable "
        "with visible :hover, :active and :focus-visible states. A flat background-color is NOT acceptable.",
        "6. Implement interactionStates as :hover/:active/:focus-visible/:disabled rules keyed on [data-id].",
        "7. Icons: inline <svg> for svg paths, <img data-asset> for extracted icons, generic glyphs as inline svg.",
        "Output only the document, starting with <!DOCTYPE html> and ending with </html>.",
        "",
        "### RESOLVED ASSETS (name -> handle)",
        asset_lines,
        "",
        "### UNRESOLVED ASSETS (CSS approximation)",
        missing_lines,
        "",
        "### INSTRUCTIONS",
        instruction or "Replicate the reference as closely as possible.",
        "",
        "### MANIFESTS",
        manifests_json,
    ]
    if healing_note:
        sections += [
            "",
            "### HEALING CONTEXT",
            healing_note,
            "The manifest already contains these corrections; use its values exactly and keep everything else.",
        ]
    if prior_source:
        sections += [
            "",
            "### EXISTING SOURCE (edit in place; preserve what is not changed)",
            prior_source,
        ]
    return "\n".join(sections)


def components_context(rows: Iterable[dict]) -> str:
    return json.dumps(list(rows), ensure_ascii=False, indent=2)
