from __future__ import annotations

import json
import logging
import threading
from typing import Mapping, Optional, Sequence

from ..config import BuildConfig
from ..errors import AssemblyError
from ..llm.calls import bounded_call
from ..llm.gemini import call_gemini
from ..llm.parsing import strip_to_markup
from ..markup import referenced_assets
from ..prompts import build_assembly_prompt
from ..schema import BuildArtifact, ResolvedAsset, VisualManifest
from ..state import AppState

logger = logging.getLogger(__name__)


def run(state: AppState) -> AppState:
    cfg = state["config"].build if state.get("config") else BuildConfig()
    state["artifact"] = build(
        state.get("manifests", []),
        state.get("assets", {}),
        state.get("instruction", ""),
        prior_source=state.get("prior_source"),
        config=cfg,
    )
    return state


def manifests_json(manifests: Sequence[VisualManifest]) -> str:
    return json.dumps(
        [m.model_dump(mode="json", exclude_none=True) for m in manifests],
        ensure_ascii=False,
        indent=2,
    )


def build(
    manifests: Sequence[VisualManifest],
    assets: Mapping[str, ResolvedAsset],
    instruction: str = "",
    prior_source: Optional[str] = None,
    *,
    config: Optional[BuildConfig] = None,
    healing_note: Optional[str] = None,
    revision: int = 0,
    cancel: Optional[threading.Event] = None,
) -> BuildArtifact:
    """Assemble one self-contained HTML document.

    Only the assembly call is retried. Raises ``AssemblyError`` when no
    document can be recovered from any attempt.
    """
    cfg = config or BuildConfig()
    prompt = build_assembly_prompt(manifests_json(manifests), assets, instruction, prior_source, healing_note)

    def _assemble() -> str:
        res = call_gemini(
            "assemble",
            prompt=prompt,
            manifests=list(manifests),
            assets=dict(assets),
            timeout=cfg.timeout_seconds,
        )
        source = strip_to_markup(res.get("text", ""))
        if source is None:
            raise AssemblyError("assembly response contains no HTML document")
        return source

    result = bounded_call(
        _assemble,
        timeout=cfg.timeout_seconds,
        retries=cfg.retries,
        cancel=cancel,
        label=f"assemble[r{revision}]",
    )
    if not result.ok or result.value is None:
        raise AssemblyError(f"revision {revision}: {result.status.value}: {result.error}")

    source = result.value
    bound = frozenset(referenced_assets(source, assets.values()))
    logger.info(
        "built revision %d (%d chars, %d/%d assets bound)",
        revision,
        len(source),
        len(bound),
        sum(1 for a in assets.values() if a.resolved),
    )
    return BuildArtifact(source=source, bound_assets=bound, revision=revision, origin="assembly")
