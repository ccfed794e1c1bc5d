"""Visual critique: rendered snapshot vs reference -> FidelityReport."""

from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, List, Sequence

from ..errors import CritiqueError
from ..llm.gemini import call_gemini
from ..llm.parsing import extract_json_object
from ..prompts import build_critique_prompt, components_context
from ..schema import DimensionScores, Discrepancy, FidelityReport, ReferenceImage, VisualManifest

logger = logging.getLogger(__name__)

_SEVERITY = {
    "minor": "minor",
    "low": "minor",
    "moderate": "moderate",
    "medium": "moderate",
    "major": "critical",
    "high": "critical",
    "critical": "critical",
}
_RECOMMENDATION = {"accept", "refine", "regenerate"}


def _unit(value: Any, scale: float = 100.0) -> float:
    v = float(value) / scale
    if math.isnan(v):
        raise ValueError("score is NaN")
    return max(0.0, min(1.0, v))


def _scale(payload: Dict[str, Any]) -> float:
    """One scale per payload: 0-100 when ``fidelityScore`` is used, as the
    prompt asks, or when any score exceeds 1; otherwise 0-1 fractions."""
    if payload.get("fidelityScore") is not None:
        return 100.0
    dims = payload.get("dimensions") if isinstance(payload.get("dimensions"), dict) else {}
    for raw in (payload.get("overall"), payload.get("score"), *dims.values()):
        try:
            if float(raw) > 1.0:
                return 100.0
        except (TypeError, ValueError):
            continue
    return 1.0


def report_from_payload(payload: Dict[str, Any]) -> FidelityReport:
    raw_score = next(
        (payload[k] for k in ("fidelityScore", "overall", "score") if payload.get(k) is not None),
        None,
    )
    if raw_score is None:
        raise CritiqueError("critique payload has no fidelity score")
    scale = _scale(payload)
    try:
        overall = _unit(raw_score, scale)
    except (TypeError, ValueError) as e:
        raise CritiqueError(f"invalid fidelity score {raw_score!r}") from e

    dims_raw = payload.get("dimensions") if isinstance(payload.get("dimensions"), dict) else {}
    dims: Dict[str, float] = {}
    for key in ("layout", "color", "typography", "spacing"):
        try:
            dims[key] = _unit(dims_raw[key], scale) if key in dims_raw else overall
        except (TypeError, ValueError):
            dims[key] = overall

    discrepancies: List[Discrepancy] = []
    for item in payload.get("discrepancies") or []:
        if isinstance(item, dict):
            discrepancies.extend(_discrepancies(item))

    recommendation = str(payload.get("recommendation") or "refine").lower()
    if recommendation not in _RECOMMENDATION:
        recommendation = "refine"
    return FidelityReport(
        overall=overall,
        dimensions=DimensionScores(**dims),
        discrepancies=tuple(discrepancies),
        summary=str(payload.get("overallAssessment") or payload.get("summary") or ""),
        recommendation=recommendation,
    )


def _discrepancies(item: Dict[str, Any]) -> List[Discrepancy]:
    path = str(item.get("componentId") or item.get("node_path") or item.get("nodeId") or "").strip()
    if not path:
        return []
    base = {
        "node_path": path,
        "issue": str(item.get("issue") or "mismatch"),
        "severity": _SEVERITY.get(str(item.get("severity", "")).lower(), "moderate"),
        "actual": _text(item.get("actual")),
    }
    correction = item.get("correctionJSON")
    if isinstance(correction, str):
        try:
            correction = json.loads(correction)
        except ValueError:
            correction = None
    # one entry per corrected property
    if isinstance(correction, dict) and correction and not item.get("property"):
        return [
            Discrepancy(**base, property=str(prop), expected=_text(value))
            for prop, value in correction.items()
            if not isinstance(value, (dict, list))
        ]
    prop = item.get("property")
    return [Discrepancy(**base, property=str(prop) if prop else None, expected=_text(item.get("expected")))]


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else json.dumps(value)


def component_rows(manifests: Sequence[VisualManifest]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for m in manifests:
        for path, node in m.walk():
            row: Dict[str, Any] = {"id": node.id, "path": path, "type": node.type}
            if node.text:
                row["text"] = node.text[:80]
            if node.styles:
                row["styles"] = node.styles
            rows.append(row)
    return rows


class GeminiCritic:
    """Scores a snapshot against the reference using the manifests as context.

    Raises ``CritiqueError`` when the response holds no usable report; the
    healing loop owns timeouts and retries.
    """

    def __init__(self, threshold: float = 0.9, timeout: float = 90.0) -> None:
        self.threshold = threshold
        self.timeout = timeout

    def __call__(
        self, snapshot: bytes, reference: ReferenceImage, manifests: Sequence[VisualManifest]
    ) -> FidelityReport:
        prompt = build_critique_prompt(components_context(component_rows(manifests)), self.threshold)
        res = call_gemini(
            "critique",
            snapshot=snapshot,
            reference=reference,
            manifests=list(manifests),
            prompt=prompt,
            timeout=self.timeout,
        )
        try:
            payload = extract_json_object(res.get("text", ""))
        except ValueError as e:
            raise CritiqueError(str(e)) from e
        report = report_from_payload(payload)
        logger.info(
            "critique: %.2f (%d discrepancies, %s)", report.overall, len(report.discrepancies), report.recommendation
        )
        return report
